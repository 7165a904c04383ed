"""
Tests for pci_topology: addresses, config headers, IOMMU group resolution
and VGA controller listing.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from conftest import BRIDGE, BRIDGE_CLASS, GPU, GPU_AUDIO, NIC, FakeSysfs
from handoff_common.exceptions import DeviceNotFoundError, GPUListError, IOMMUUnsupportedError
from pci_topology.address import DeviceAddress
from pci_topology.gpu_scanner import VGAScanner
from pci_topology.pci_config import PCIDeviceConfig, is_endpoint, read_config
from pci_topology.resolver import PCITopologyResolver


class TestDeviceAddress:
    """Tests for DeviceAddress parsing and formatting."""

    def test_parse_full_form(self):
        address = DeviceAddress.parse("0000:0a:1f.7")
        assert (address.domain, address.bus, address.slot, address.function) == (0, 0x0A, 0x1F, 7)
        assert str(address) == "0000:0a:1f.7"

    def test_parse_short_form_defaults_domain(self):
        assert str(DeviceAddress.parse("01:00.1")) == "0000:01:00.1"

    def test_parse_uppercase_is_canonicalised(self):
        assert str(DeviceAddress.parse("0000:0A:00.0")) == "0000:0a:00.0"

    @pytest.mark.parametrize("text", ["", "vtcon0", "0000:01:00", "0000:01:00.8", "1:2:3:4.0"])
    def test_parse_rejects_garbage(self, text):
        with pytest.raises(ValueError):
            DeviceAddress.parse(text)

    def test_slot_range_is_checked(self):
        with pytest.raises(ValueError):
            DeviceAddress(0, 1, 0x20, 0)

    def test_from_libvirt_attributes(self):
        address = DeviceAddress.from_libvirt("0x0000", "0x01", "0x00", "0x1")
        assert address == DeviceAddress.parse(GPU_AUDIO)

    def test_ordering_matches_canonical_string(self):
        addresses = [DeviceAddress.parse(a) for a in (NIC, GPU_AUDIO, BRIDGE, GPU)]
        assert [str(a) for a in sorted(addresses)] == sorted(str(a) for a in addresses)


class TestPCIConfig:
    """Tests for the config space header."""

    @pytest.mark.parametrize("header_type,expected", [
        (0x00, True),    # endpoint
        (0x80, True),    # multi-function endpoint
        (0x7F, True),    # uninitialized sentinel
        (0xFF, True),    # all-ones read
        (0x01, False),   # PCI-to-PCI bridge
        (0x81, False),   # multi-function bridge
        (0x02, False),   # CardBus bridge
    ])
    def test_is_endpoint(self, header_type, expected):
        assert is_endpoint(header_type) is expected

    def test_from_bytes_decodes_little_endian(self):
        data = bytes.fromhex("0210 bf73 0700 1000 c1 00 0003 10 00 80 00")
        config = PCIDeviceConfig.from_bytes(data)

        assert config.vendor_id == 0x1002
        assert config.device_id == 0x73BF
        assert config.base_class == 0x03
        assert config.subclass == 0x00
        assert config.is_multi_function is True
        assert config.layout == 0
        assert config.is_endpoint is True

    def test_short_header_rejected(self):
        with pytest.raises(ValueError):
            PCIDeviceConfig.from_bytes(b"\x00" * 8)

    def test_unreadable_config_counts_as_endpoint(self, tmp_path, caplog):
        """A missing or truncated config file decodes as the sentinel."""
        short = tmp_path / "config"
        short.write_bytes(b"\x02\x10")

        assert read_config(short).is_endpoint is True
        assert read_config(tmp_path / "missing").is_endpoint is True
        assert "Could not read PCI config" in caplog.text


class TestPCITopologyResolver:
    """Tests for IOMMU group resolution against a fake sysfs."""

    def test_gpu_pulls_in_audio_function(self, gpu_host):
        """Resolving the GPU yields its group with the audio function."""
        result = PCITopologyResolver(gpu_host.layout).resolve([GPU])

        assert result.group_ids == ["1"]
        assert [str(d) for d in result.devices] == [GPU, GPU_AUDIO]

    def test_same_group_is_resolved_once(self, gpu_host):
        result = PCITopologyResolver(gpu_host.layout).resolve([GPU_AUDIO, GPU])

        assert len(result.groups) == 1
        assert result.groups[0].device_count == 2

    def test_bridges_are_left_out(self, fake_sysfs: FakeSysfs):
        """A bridge sharing the group is never part of the work set."""
        fake_sysfs.add_device(BRIDGE, group="2", driver="pcieport",
                              header_type=0x81, class_code=BRIDGE_CLASS)
        fake_sysfs.add_device(GPU, group="2", driver="amdgpu")

        result = PCITopologyResolver(fake_sysfs.layout).resolve([GPU])
        assert [str(d) for d in result.devices] == [GPU]

    def test_resolution_is_deterministic(self, gpu_host):
        """Same topology, any input order: identical groups and devices."""
        resolver = PCITopologyResolver(gpu_host.layout)

        first = resolver.resolve([NIC, GPU_AUDIO])
        second = resolver.resolve([GPU, NIC])

        assert first.group_ids == second.group_ids == ["1", "12"]
        assert first.devices == second.devices
        assert [str(d) for d in first.devices] == [GPU, GPU_AUDIO, NIC]

    def test_groups_sort_numerically(self, fake_sysfs: FakeSysfs):
        fake_sysfs.add_device("0000:02:00.0", group="10", driver="nvme", class_code=0x0108)
        fake_sysfs.add_device("0000:03:00.0", group="9", driver="xhci_hcd", class_code=0x0C03)

        result = PCITopologyResolver(fake_sysfs.layout).resolve(["0000:02:00.0", "0000:03:00.0"])
        assert result.group_ids == ["9", "10"]

    def test_missing_device_strict(self, gpu_host):
        with pytest.raises(DeviceNotFoundError) as exc_info:
            PCITopologyResolver(gpu_host.layout).resolve(["0000:09:00.0"])
        assert exc_info.value.exit_code == 2

    def test_no_iommu_group_strict(self, fake_sysfs: FakeSysfs):
        fake_sysfs.add_device(GPU, group=None, driver="amdgpu")

        with pytest.raises(IOMMUUnsupportedError):
            PCITopologyResolver(fake_sysfs.layout).resolve([GPU])

    def test_lenient_mode_skips_bad_devices(self, gpu_host, caplog):
        """A failing device doesn't stop the other groups from resolving."""
        result = PCITopologyResolver(gpu_host.layout).resolve(
            ["0000:09:00.0", GPU], continue_on_error=True
        )

        assert result.group_ids == ["1"]
        assert "Skipping 0000:09:00.0" in caplog.text

    def test_empty_request(self, gpu_host):
        result = PCITopologyResolver(gpu_host.layout).resolve([])
        assert not result
        assert result.devices == []


class TestVGAScanner:
    """Tests for lspci-based VGA listing."""

    LSPCI_OUTPUT = (
        "0000:00:02.0 0300: 8086:3e92 (prog-if 00 [VGA controller])\n"
        "\tSubsystem: 1043:8694\n"
        "\tKernel driver in use: i915\n"
        "\n"
        "0000:01:00.0 0300: 1002:73bf (rev c1) (prog-if 00 [VGA controller])\n"
        "\tKernel driver in use: amdgpu\n"
        "\n"
        "0000:01:00.1 0403: 1002:ab28\n"
        "\tKernel driver in use: snd_hda_intel\n"
    )

    def test_parse_lspci(self):
        gpus = VGAScanner.parse_lspci(self.LSPCI_OUTPUT)
        assert [str(g) for g in gpus] == ["0000:00:02.0", GPU]

    def test_list_runs_lspci(self):
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout=self.LSPCI_OUTPUT, stderr="")
            gpus = VGAScanner().list_vga_devices()

        assert mock_run.call_args[0][0] == ["lspci", "-vnD"]
        assert DeviceAddress.parse(GPU) in gpus

    def test_lspci_failure_raises(self):
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="pcilib: error")
            with pytest.raises(GPUListError) as exc_info:
                VGAScanner().list_vga_devices()
        assert exc_info.value.exit_code == 6

    def test_lspci_missing_raises(self):
        with patch("subprocess.run", side_effect=FileNotFoundError("lspci")):
            with pytest.raises(GPUListError):
                VGAScanner().list_vga_devices()

    def test_lspci_timeout_raises(self):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired("lspci", 30)):
            with pytest.raises(GPUListError):
                VGAScanner().list_vga_devices()


class TestResolveCLI:
    """Tests for the python -m pci_topology audit command."""

    def test_prints_groups_and_drivers(self, gpu_host, capsys):
        from pci_topology.cli import main

        with pytest.raises(SystemExit) as exc_info:
            main([GPU, "--sysfs-root", str(gpu_host.layout.root)])

        assert exc_info.value.code == 0
        out = capsys.readouterr().out
        assert "Group 1:" in out
        assert f"{GPU_AUDIO}  driver: snd_hda_intel" in out

    def test_missing_device_exit_code(self, gpu_host):
        from pci_topology.cli import main

        with pytest.raises(SystemExit) as exc_info:
            main(["0000:09:00.0", "--sysfs-root", str(gpu_host.layout.root)])
        assert exc_info.value.code == 2

    def test_gpu_listing_failure_is_not_fatal(self, gpu_host, capsys):
        from pci_topology.cli import main

        with patch("subprocess.run", side_effect=FileNotFoundError("lspci")):
            with pytest.raises(SystemExit) as exc_info:
                main([GPU, "-g", "--sysfs-root", str(gpu_host.layout.root)])

        assert exc_info.value.code == 0
        assert "[VGA]" not in capsys.readouterr().out
