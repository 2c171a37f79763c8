"""Tests for the GPU provider registry and merge rules."""

import pytest

from dashtop.gpu import nvidia
from dashtop.gpu.registry import (
    GpuProvider,
    GpuProviderRegistry,
    LspciProvider,
    NvidiaProvider,
    SysfsProvider,
    default_gpu_index,
    merge_gpu_info,
    merge_gpu_lists,
    merge_process_lists,
    probe_gpus,
)
from dashtop.gpu.types import (
    GpuInfo,
    GpuKind,
    GpuMemory,
    GpuPreference,
    GpuProcessUsage,
    GpuTelemetry,
)


class FakeProvider(GpuProvider):
    """Provider returning a fixed list and recording the skip hint."""

    def __init__(self, name, priority, gpus=None, error=None):
        self.name = name
        self.priority = priority
        self._gpus = gpus or []
        self._error = error
        self.calls: list[bool] = []

    def probe(self, skip_nvidia=False):
        self.calls.append(skip_nvidia)
        if self._error is not None:
            raise self._error
        return list(self._gpus)


class FakeTracker:
    def __init__(self, usages=None):
        self.usages = usages or []
        self.calls = 0

    def sample_processes(self):
        self.calls += 1
        return list(self.usages)


class TestMergeGpuInfo:
    """Tests for the fill-absent-fields merge."""

    def test_unknown_kind_upgraded(self):
        """Test an Unknown entry takes the kind of a later source."""
        current = GpuInfo(id="pci:0000:00:02.0", name="GPU", kind=GpuKind.UNKNOWN)
        incoming = GpuInfo(id="pci:0000:00:02.0", name="GPU", kind=GpuKind.INTEGRATED)
        assert merge_gpu_info(current, incoming).kind is GpuKind.INTEGRATED

    def test_known_kind_never_downgraded(self):
        """Test a known kind survives an Unknown or different later source."""
        current = GpuInfo(id="pci:x", name="GPU", kind=GpuKind.DISCRETE)
        assert merge_gpu_info(current, GpuInfo(id="pci:x", name="GPU")).kind is GpuKind.DISCRETE
        other = GpuInfo(id="pci:x", name="GPU", kind=GpuKind.INTEGRATED)
        assert merge_gpu_info(current, other).kind is GpuKind.DISCRETE

    def test_fills_absent_fields_only(self):
        """Test memory, vendor and driver are filled but never overwritten."""
        current = GpuInfo(id="pci:x", name="AMD", vendor="AMD")
        incoming = GpuInfo(
            id="pci:x",
            name="AMD",
            vendor="Advanced Micro Devices",
            device="Navi 21",
            memory=GpuMemory(used_bytes=1, total_bytes=2),
            driver="amdgpu",
            driver_version="6.1",
            telemetry=GpuTelemetry(temperature_c=50.0),
        )
        merged = merge_gpu_info(current, incoming)
        assert merged.vendor == "AMD"
        assert merged.device == "Navi 21"
        assert merged.memory == GpuMemory(used_bytes=1, total_bytes=2)
        assert merged.driver == "amdgpu"
        assert merged.driver_version == "6.1"
        assert merged.telemetry.temperature_c == 50.0

    def test_longer_name_wins(self):
        """Test the more descriptive display name is kept."""
        current = GpuInfo(id="pci:x", name="AMD 73bf (amdgpu)")
        incoming = GpuInfo(id="pci:x", name="Advanced Micro Devices, Inc. Navi 21")
        assert merge_gpu_info(current, incoming).name == incoming.name
        assert merge_gpu_info(incoming, current).name == incoming.name

    def test_merge_lists_first_seen_order(self):
        """Test merged lists keep first-seen order and join on id."""
        a = GpuInfo(id="pci:a", name="A")
        b = GpuInfo(id="pci:b", name="B", kind=GpuKind.DISCRETE)
        a2 = GpuInfo(id="pci:a", name="A", kind=GpuKind.INTEGRATED)
        merged = merge_gpu_lists([[a, b], [a2]])
        assert [gpu.id for gpu in merged] == ["pci:a", "pci:b"]
        assert merged[0].kind is GpuKind.INTEGRATED


class TestMergeProcessLists:
    """Tests for per-process usage merging."""

    def test_max_percentages_and_compute_dominates(self):
        """Test samples for the same (gpu, pid) combine by max, C over G."""
        merged = merge_process_lists(
            [
                [GpuProcessUsage(gpu_id="g", pid=7, kind="G", sm_pct=10.0, fb_mb=100)],
                [GpuProcessUsage(gpu_id="g", pid=7, kind="C", sm_pct=30.0, enc_pct=5.0, fb_mb=50)],
            ]
        )
        assert len(merged) == 1
        usage = merged[0]
        assert usage.kind == "C"
        assert usage.sm_pct == 30.0
        assert usage.enc_pct == 5.0
        assert usage.fb_mb == 100

    def test_distinct_gpus_kept_apart(self):
        """Test the same pid on two GPUs yields two entries."""
        merged = merge_process_lists(
            [[GpuProcessUsage(gpu_id="a", pid=1), GpuProcessUsage(gpu_id="b", pid=1)]]
        )
        assert len(merged) == 2


class TestDefaultGpuIndex:
    """Tests for preferred GPU selection."""

    gpus = [
        GpuInfo(id="u", name="u"),
        GpuInfo(id="i", name="i", kind=GpuKind.INTEGRATED),
        GpuInfo(id="d", name="d", kind=GpuKind.DISCRETE),
    ]

    def test_auto_prefers_discrete(self):
        """Test Auto picks the discrete GPU."""
        assert default_gpu_index(self.gpus, GpuPreference.AUTO) == 2
        assert default_gpu_index(self.gpus, GpuPreference.DISCRETE) == 2

    def test_integrated_preference(self):
        """Test Integrated picks the integrated GPU first."""
        assert default_gpu_index(self.gpus, GpuPreference.INTEGRATED) == 1

    def test_falls_back_through_tiers(self):
        """Test fallback to the next kind and to unknown."""
        assert default_gpu_index(self.gpus[:2], GpuPreference.DISCRETE) == 1
        assert default_gpu_index(self.gpus[2:], GpuPreference.INTEGRATED) == 0
        assert default_gpu_index(self.gpus[:1], GpuPreference.AUTO) == 0

    def test_empty(self):
        """Test an empty list has no default."""
        assert default_gpu_index([], GpuPreference.AUTO) is None


class TestGpuProviderRegistry:
    """Tests for probe ordering and the vendor skip hint."""

    def test_default_providers_by_priority(self):
        """Test the built-in providers and their priorities."""
        registry = GpuProviderRegistry.with_defaults()
        providers = registry.providers
        assert [type(p) for p in providers] == [NvidiaProvider, LspciProvider, SysfsProvider]
        assert [p.priority for p in providers] == [100, 50, 25]

    def test_vendor_covered_sets_skip_hint(self):
        """Test other providers are told to skip NVIDIA when nvidia-smi found GPUs."""
        vendor = FakeProvider(
            "nvidia-smi", 100, [GpuInfo(id="nvidia:0", name="RTX", kind=GpuKind.DISCRETE)]
        )
        pci = FakeProvider("lspci", 50, [GpuInfo(id="pci:0000:00:02.0", name="Intel UHD")])
        registry = GpuProviderRegistry([pci, vendor])

        gpus = registry.probe_all()

        assert vendor.calls == [False]
        assert pci.calls == [True]
        assert [gpu.id for gpu in gpus] == ["nvidia:0", "pci:0000:00:02.0"]

    def test_no_vendor_gpus_no_skip(self):
        """Test an empty vendor result leaves the skip hint off."""
        vendor = FakeProvider("nvidia-smi", 100)
        pci = FakeProvider("lspci", 50)
        GpuProviderRegistry([vendor, pci]).probe_all()
        assert vendor.calls == [False]
        assert pci.calls == [False]

    def test_failing_provider_is_isolated(self):
        """Test a raising provider contributes nothing and others still merge."""
        broken = FakeProvider("lspci", 50, error=RuntimeError("boom"))
        sysfs = FakeProvider("sysfs", 25, [GpuInfo(id="drm:card0", name="GPU")])
        registry = GpuProviderRegistry([broken])
        registry.register(sysfs)
        assert [gpu.id for gpu in registry.probe_all()] == ["drm:card0"]


class TestProbeGpus:
    """Tests for snapshot assembly."""

    def test_tracker_used_for_non_vendor_gpus(self, monkeypatch):
        """Test the accounting tracker supplies usage for sysfs/PCI GPUs."""
        monkeypatch.setattr(
            nvidia,
            "probe_nvidia_processes",
            lambda timeout: pytest.fail("nvidia-smi should not be queried"),
        )
        registry = GpuProviderRegistry([FakeProvider("sysfs", 25, [GpuInfo(id="pci:a", name="A")])])
        tracker = FakeTracker([GpuProcessUsage(gpu_id="pci:a", pid=5, sm_pct=1.0)])

        snapshot = probe_gpus(registry, tracker)

        assert [gpu.id for gpu in snapshot.gpus] == ["pci:a"]
        assert [usage.pid for usage in snapshot.processes] == [5]
        assert tracker.calls == 1

    def test_vendor_processes_for_nvidia_gpus(self, monkeypatch):
        """Test nvidia-smi usage is collected only when an NVIDIA GPU exists."""
        monkeypatch.setattr(
            nvidia,
            "probe_nvidia_processes",
            lambda timeout: [GpuProcessUsage(gpu_id="nvidia:0", pid=9, kind="C")],
        )
        registry = GpuProviderRegistry(
            [FakeProvider("nvidia-smi", 100, [GpuInfo(id="nvidia:0", name="RTX")])]
        )
        tracker = FakeTracker()

        snapshot = probe_gpus(registry, tracker)

        assert [usage.pid for usage in snapshot.processes] == [9]
        assert tracker.calls == 0
