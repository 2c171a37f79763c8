"""Tests for PCI enumeration parsing and GPU classification."""

from dashtop.gpu import lspci
from dashtop.gpu.classify import classify_gpu_kind, guess_vendor_name, vendor_name_from_id
from dashtop.gpu.lspci import parse_lspci_machine, parse_lspci_plain, probe_lspci_gpus
from dashtop.gpu.types import GpuKind

MACHINE_OUTPUT = (
    'Slot: "0000:00:02.0" Class: "VGA compatible controller" '
    'Vendor: "Intel Corporation" Device: "UHD Graphics 620"\n'
    'Slot: "0000:01:00.0" Class: "3D controller" '
    'Vendor: "NVIDIA Corporation" Device: "GA107M"\n'
    'Slot: "0000:00:1f.3" Class: "Audio device" '
    'Vendor: "Intel Corporation" Device: "Sunrise Point-LP HD Audio"\n'
)

PLAIN_OUTPUT = """\
0000:00:1f.3 Audio device: Intel Corporation Sunrise Point-LP HD Audio
0000:03:00.0 VGA compatible controller: Advanced Micro Devices, Inc. [AMD/ATI] Navi 21
0000:05:00.0 Display controller: Advanced Micro Devices, Inc. [AMD/ATI] Radeon Graphics
"""


class TestLspciMachine:
    """Tests for the quoted key/value format."""

    def test_filters_display_classes(self):
        """Test only display-class devices are returned."""
        gpus = parse_lspci_machine(MACHINE_OUTPUT)
        assert [gpu.id for gpu in gpus] == ["pci:0000:00:02.0", "pci:0000:01:00.0"]
        assert gpus[0].name == "Intel Corporation UHD Graphics 620"
        assert gpus[0].kind is GpuKind.INTEGRATED
        assert gpus[1].kind is GpuKind.DISCRETE

    def test_skip_nvidia(self):
        """Test NVIDIA entries are dropped when the vendor tool covered them."""
        gpus = parse_lspci_machine(MACHINE_OUTPUT, skip_nvidia=True)
        assert [gpu.vendor for gpu in gpus] == ["Intel Corporation"]


class TestLspciPlain:
    """Tests for the plain fallback format."""

    def test_parse_plain(self):
        """Test slot, vendor guess and classification from plain lines."""
        gpus = parse_lspci_plain(PLAIN_OUTPUT)
        assert [gpu.id for gpu in gpus] == ["pci:0000:03:00.0", "pci:0000:05:00.0"]
        assert gpus[0].vendor == "AMD"
        assert gpus[0].kind is GpuKind.DISCRETE
        assert gpus[1].kind is GpuKind.INTEGRATED

    def test_probe_falls_back_to_plain(self, monkeypatch):
        """Test the plain format is used when -mm output has no GPUs."""

        def fake_try_command(args, timeout):
            return "" if "-mm" in args else PLAIN_OUTPUT

        monkeypatch.setattr(lspci, "try_command", fake_try_command)
        assert len(probe_lspci_gpus(0.5)) == 2

    def test_probe_without_tool(self, monkeypatch):
        """Test a missing lspci yields no GPUs."""
        monkeypatch.setattr(lspci, "try_command", lambda args, timeout: None)
        assert probe_lspci_gpus(0.5) == []


class TestClassify:
    """Tests for kind and vendor heuristics."""

    def test_vendor_ids(self):
        """Test Intel is integrated and NVIDIA discrete by vendor id."""
        assert classify_gpu_kind("GPU", "x", vendor_id=0x8086) is GpuKind.INTEGRATED
        assert classify_gpu_kind("GPU", "x", vendor_id=0x10DE) is GpuKind.DISCRETE

    def test_amd_integrated_by_name_or_slot(self):
        """Test AMD parts are integrated on name patterns or the iGPU slot."""
        assert classify_gpu_kind("AMD", "Radeon Vega 8") is GpuKind.INTEGRATED
        assert classify_gpu_kind("AMD", "Navi 21", slot="0000:00:02.0") is GpuKind.INTEGRATED
        assert classify_gpu_kind("AMD", "Navi 21", slot="0000:03:00.0") is GpuKind.DISCRETE

    def test_other_vendor(self):
        """Test unknown vendors are integrated on a name match, else unknown."""
        assert classify_gpu_kind("Moore", "integrated core") is GpuKind.INTEGRATED
        assert classify_gpu_kind("Moore", "S80") is GpuKind.UNKNOWN

    def test_vendor_names(self):
        """Test vendor labels from descriptions, ids and drivers."""
        assert guess_vendor_name("NVIDIA Corporation TU104") == "NVIDIA"
        assert guess_vendor_name("Matrox G200") == "GPU"
        assert vendor_name_from_id(0x1002) == "AMD"
        assert vendor_name_from_id(None, "i915") == "Intel"
        assert vendor_name_from_id(None, None) == "GPU"
