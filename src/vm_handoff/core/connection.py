"""
LibVirt Connection Manager

Opens the hypervisor connection lazily and reopens it when it drops.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Optional

try:
    import libvirt
    LIBVIRT_AVAILABLE = True
except ImportError:
    LIBVIRT_AVAILABLE = False
    libvirt = None

from handoff_common.exceptions import LibvirtConnectionError

logger = logging.getLogger(__name__)


class LibvirtConnection:
    """
    Thread-safe libvirt connection manager.

    A connection must not be shared across fork(); every process that talks
    to libvirt builds its own LibvirtConnection.
    """

    SYSTEM_URI = "qemu:///system"

    def __init__(self, uri: str = SYSTEM_URI):
        if not LIBVIRT_AVAILABLE:
            raise LibvirtConnectionError(
                uri, "libvirt-python is not installed (pip install libvirt-python)"
            )
        self._uri = uri
        self._conn = None
        self._lock = threading.RLock()

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def is_connected(self) -> bool:
        with self._lock:
            if self._conn is None:
                return False
            try:
                self._conn.getVersion()
                return True
            except libvirt.libvirtError:
                return False

    def connect(self) -> None:
        """
        Establish connection to libvirt.

        Raises:
            LibvirtConnectionError: If connection fails
        """
        with self._lock:
            if self.is_connected:
                return

            try:
                libvirt.registerErrorHandler(self._error_handler, None)
                self._conn = libvirt.open(self._uri)
            except libvirt.libvirtError as e:
                raise LibvirtConnectionError(self._uri, cause=e) from e

            if self._conn is None:
                raise LibvirtConnectionError(self._uri)
            logger.info(f"Connected to libvirt: {self._uri}")

    def disconnect(self) -> None:
        """Close connection to libvirt."""
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except libvirt.libvirtError as e:
                    logger.debug(f"Error closing libvirt connection: {e}")
                self._conn = None
                logger.info("Disconnected from libvirt")

    @contextmanager
    def get_connection(self):
        """
        Get a live connection.

        Usage:
            with conn_manager.get_connection() as conn:
                domain = conn.lookupByName(name)
        """
        self.connect()
        try:
            yield self._conn
        except libvirt.libvirtError:
            # Drop a dead connection so the next call reconnects
            if not self.is_connected:
                logger.warning(f"Lost connection to {self._uri}")
                self._conn = None
            raise

    @staticmethod
    def _error_handler(ctx, error):
        # libvirt prints every error to stderr unless a handler is installed
        if error[0] in (libvirt.VIR_ERR_WARNING, libvirt.VIR_ERR_NO_DOMAIN):
            return
        logger.debug(f"LibVirt: {error}")


def open_connection(uri: Optional[str] = None) -> LibvirtConnection:
    """Create a connection manager for uri (the system URI by default)."""
    return LibvirtConnection(uri or LibvirtConnection.SYSTEM_URI)
