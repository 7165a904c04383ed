"""
Guarded control-file writes.

Writing to driver_override, unbind, drivers_probe, rescan or a console
bind file can hit a kernel bug that blocks the writer forever, beyond the
reach of any signal it could handle. Every such write therefore runs in a
forked child process; the parent enforces the deadline and SIGKILLs the
child when it expires, without waiting for it to die.
"""

from __future__ import annotations

import errno
import logging
import multiprocessing
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Union

from handoff_common.exceptions import ErrorKind, WriteTimeoutError, ControlFileError

logger = logging.getLogger(__name__)

WriteFunction = Callable[[str, bytes], None]


def write_control_file(path: str, data: bytes) -> None:
    """Write data to a sysfs attribute in a single write(2) call."""
    fd = os.open(path, os.O_WRONLY | os.O_TRUNC)
    try:
        os.write(fd, data)
    finally:
        os.close(fd)


def _run_write(write_fn: WriteFunction, path: str, data: bytes, conn) -> None:
    """Child side: perform the write and report (errno, message)."""
    try:
        write_fn(path, data)
    except OSError as e:
        conn.send((e.errno or errno.EIO, e.strerror or str(e)))
    except Exception as e:
        conn.send((errno.EIO, str(e)))
    else:
        conn.send((0, ""))
    finally:
        conn.close()


@dataclass
class WriteResult:
    """Outcome of one guarded write."""
    path: str
    data: bytes
    success: bool
    kind: Optional[ErrorKind] = None
    errno: Optional[int] = None
    message: str = ""

    @property
    def timed_out(self) -> bool:
        return self.kind == ErrorKind.TIMEOUT

    @property
    def text(self) -> str:
        """Printable form of the written data."""
        return self.data.decode("ascii", "replace")

    def raise_on_failure(self, timeout: float = 0.0) -> "WriteResult":
        """
        Turn a failed result into an exception for intolerant callers.

        Raises:
            WriteTimeoutError: The write hung
            ControlFileError: The write failed with an I/O error
        """
        if self.success:
            return self
        if self.timed_out:
            raise WriteTimeoutError(self.path, self.text, timeout)
        raise ControlFileError(self.path, self.text, self.message)


class GuardedWriter:
    """
    Writes kernel control files from a killable child process.

    Args:
        timeout: Default deadline for a single write (seconds)
        write_fn: Function run in the child; replaced in tests
    """

    def __init__(self, timeout: float = 60.0, write_fn: WriteFunction = write_control_file):
        self.timeout = timeout
        self._write_fn = write_fn
        self._ctx = multiprocessing.get_context("fork")
        self._abandoned: List[int] = []

    def write(
        self,
        path: Union[str, Path],
        data: Union[str, bytes],
        deadline: Optional[float] = None,
    ) -> WriteResult:
        """
        Write data to path within the deadline.

        Args:
            path: Control file to write
            data: ASCII text or raw bytes
            deadline: Seconds to wait (defaults to the writer's timeout)

        Returns:
            WriteResult; never raises for write failures.
        """
        path = str(path)
        if isinstance(data, str):
            data = data.encode("ascii")
        deadline = self.timeout if deadline is None else deadline
        self._reap_abandoned()

        reader, writer = self._ctx.Pipe(duplex=False)
        process = self._ctx.Process(
            target=_run_write,
            args=(self._write_fn, path, data, writer),
            name=f"guarded-write:{os.path.basename(path)}",
        )
        try:
            process.start()
        except OSError as e:
            reader.close()
            writer.close()
            logger.error(f"Could not start writer process for {path}: {e}")
            return WriteResult(
                path, data, False,
                kind=ErrorKind.IO_ERROR,
                errno=e.errno,
                message=f"fork failed: {e}",
            )
        writer.close()

        try:
            process.join(deadline)

            if process.is_alive():
                self._kill(process)
                self._abandon(process)
                result = WriteResult(
                    path, data, False,
                    kind=ErrorKind.TIMEOUT,
                    message=f"no answer after {deadline}s",
                )
                logger.error(
                    f"This is taking way too long! Tried to write {result.text!r} into {path}. "
                    "Most likely means we hit a kernel bug, check your dmesg!"
                )
                return result

            try:
                code, message = reader.recv() if reader.poll() else (None, "")
            except EOFError:
                code, message = None, ""
        finally:
            reader.close()

        if code is None:
            code = errno.EIO
            message = f"writer exited with status {process.exitcode} without reporting"

        if code == 0:
            logger.debug(f"Wrote {data!r} into {path}")
            return WriteResult(path, data, True)

        logger.debug(f"Writing {data!r} into {path} failed: {message}")
        return WriteResult(
            path, data, False,
            kind=ErrorKind.IO_ERROR,
            errno=code,
            message=message,
        )

    @staticmethod
    def _kill(process) -> None:
        """SIGKILL the child; a task stuck in the kernel may never die, so don't wait."""
        try:
            process.kill()
        except OSError as e:
            logger.warning(f"Could not kill writer process {process.pid}: {e}")

    def _abandon(self, process) -> None:
        """
        Forget a killed writer.

        multiprocessing joins every child it knows about when the interpreter
        (or a forked child of ours) exits; a writer stuck in the kernel would
        block that join forever. The pid is kept so it can be reaped later
        without blocking.
        """
        multiprocessing.process._children.discard(process)
        self._abandoned.append(process.pid)

    @property
    def abandoned(self) -> List[int]:
        """Pids of killed writers that have not been reaped yet."""
        return list(self._abandoned)

    def _reap_abandoned(self) -> None:
        for pid in list(self._abandoned):
            try:
                reaped, _ = os.waitpid(pid, os.WNOHANG)
            except ChildProcessError:
                reaped = pid
            if reaped:
                logger.debug(f"Reaped killed writer process {pid}")
                self._abandoned.remove(pid)
