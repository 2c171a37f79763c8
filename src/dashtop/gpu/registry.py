"""GPU provider registry: discovery strategies and the merge of their results."""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace

from dashtop.commands import DEFAULT_TIMEOUT
from dashtop.gpu import lspci, nvidia, sysfs
from dashtop.gpu.drm import DrmProcessTracker
from dashtop.gpu.types import (
    GpuInfo,
    GpuKind,
    GpuPreference,
    GpuProcessUsage,
    GpuSnapshot,
    max_optional,
    merge_kind,
)

log = logging.getLogger(__name__)

VENDOR_TOOL = "nvidia-smi"


class GpuProvider(ABC):
    """One discovery strategy producing a partial GPU list."""

    name: str = ""
    priority: int = 0
    timeout: float = DEFAULT_TIMEOUT

    @abstractmethod
    def probe(self, skip_nvidia: bool = False) -> list[GpuInfo]:
        """Return the GPUs this source can see; empty on any failure."""


class NvidiaProvider(GpuProvider):
    name = VENDOR_TOOL
    priority = 100

    def probe(self, skip_nvidia: bool = False) -> list[GpuInfo]:
        return nvidia.probe_nvidia_gpus(self.timeout)


class LspciProvider(GpuProvider):
    name = "lspci"
    priority = 50

    def probe(self, skip_nvidia: bool = False) -> list[GpuInfo]:
        return lspci.probe_lspci_gpus(self.timeout, skip_nvidia)


class SysfsProvider(GpuProvider):
    name = "sysfs"
    priority = 25

    def probe(self, skip_nvidia: bool = False) -> list[GpuInfo]:
        return sysfs.probe_sysfs_gpus(skip_nvidia)


def merge_gpu_info(current: GpuInfo, incoming: GpuInfo) -> GpuInfo:
    """
    Fill fields of ``current`` that are absent, never overwriting known ones.

    A known kind is never downgraded to unknown, and the longer display name
    wins.
    """
    updates = {}
    if current.kind is GpuKind.UNKNOWN and incoming.kind is not GpuKind.UNKNOWN:
        updates["kind"] = incoming.kind
    for attr in ("memory", "vendor", "device", "driver", "driver_version"):
        if getattr(current, attr) is None and getattr(incoming, attr) is not None:
            updates[attr] = getattr(incoming, attr)
    telemetry = current.telemetry.merged_with(incoming.telemetry)
    if telemetry is not current.telemetry:
        updates["telemetry"] = telemetry
    if len(incoming.name) > len(current.name):
        updates["name"] = incoming.name
    return replace(current, **updates) if updates else current


def merge_gpu_lists(sources: list[list[GpuInfo]]) -> list[GpuInfo]:
    """Merge per-provider lists keyed by GPU identity, first-seen order."""
    by_id: dict[str, GpuInfo] = {}
    for gpus in sources:
        for gpu in gpus:
            current = by_id.get(gpu.id)
            by_id[gpu.id] = gpu if current is None else merge_gpu_info(current, gpu)
    return list(by_id.values())


def merge_process_usage(current: GpuProcessUsage, incoming: GpuProcessUsage) -> GpuProcessUsage:
    fb_mb = current.fb_mb
    if incoming.fb_mb is not None:
        fb_mb = max(current.fb_mb or 0, incoming.fb_mb)
    return replace(
        current,
        kind=merge_kind(current.kind, incoming.kind),
        sm_pct=max_optional(current.sm_pct, incoming.sm_pct),
        mem_pct=max_optional(current.mem_pct, incoming.mem_pct),
        enc_pct=max_optional(current.enc_pct, incoming.enc_pct),
        dec_pct=max_optional(current.dec_pct, incoming.dec_pct),
        fb_mb=fb_mb,
    )


def merge_process_lists(sources: list[list[GpuProcessUsage]]) -> list[GpuProcessUsage]:
    by_key: dict[tuple[str, int], GpuProcessUsage] = {}
    for usages in sources:
        for usage in usages:
            key = (usage.gpu_id, usage.pid)
            current = by_key.get(key)
            by_key[key] = usage if current is None else merge_process_usage(current, usage)
    return list(by_key.values())


def default_gpu_index(gpus: list[GpuInfo], preference: GpuPreference) -> int | None:
    """Index of the first GPU of the most preferred kind, or None."""
    if preference is GpuPreference.INTEGRATED:
        order = (GpuKind.INTEGRATED, GpuKind.DISCRETE, GpuKind.UNKNOWN)
    else:
        order = (GpuKind.DISCRETE, GpuKind.INTEGRATED, GpuKind.UNKNOWN)
    for kind in order:
        for index, gpu in enumerate(gpus):
            if gpu.kind is kind:
                return index
    return None


class GpuProviderRegistry:
    """Ordered collection of providers probed together and merged."""

    def __init__(self, providers: list[GpuProvider] | None = None) -> None:
        self._providers: list[GpuProvider] = list(providers or [])

    @classmethod
    def with_defaults(cls) -> "GpuProviderRegistry":
        return cls([NvidiaProvider(), LspciProvider(), SysfsProvider()])

    @property
    def providers(self) -> list[GpuProvider]:
        return list(self._providers)

    def register(self, provider: GpuProvider) -> None:
        self._providers.append(provider)

    def _safe_probe(self, provider: GpuProvider, skip_nvidia: bool) -> list[GpuInfo]:
        try:
            return provider.probe(skip_nvidia)
        except Exception:
            log.debug("provider %s failed", provider.name, exc_info=True)
            return []

    def probe_all(self) -> list[GpuInfo]:
        """
        Probe every provider, highest priority first, and merge the results.

        The vendor tool runs first; when it reports GPUs the remaining
        providers are told to skip that vendor's entries.
        """
        ordered = sorted(self._providers, key=lambda p: p.priority, reverse=True)

        vendor_result: list[GpuInfo] | None = None
        for provider in ordered:
            if provider.name == VENDOR_TOOL:
                vendor_result = self._safe_probe(provider, False)
                break
        vendor_covered = bool(vendor_result)

        results: list[list[GpuInfo]] = []
        for provider in ordered:
            if provider.name == VENDOR_TOOL and vendor_result is not None:
                results.append(vendor_result)
                vendor_result = None
            else:
                results.append(self._safe_probe(provider, vendor_covered))
        return merge_gpu_lists(results)


def probe_gpus(
    registry: GpuProviderRegistry,
    tracker: DrmProcessTracker,
    timeout: float = DEFAULT_TIMEOUT,
) -> GpuSnapshot:
    """Assemble one complete snapshot of GPUs and per-process usage."""
    gpus = registry.probe_all()
    sources: list[list[GpuProcessUsage]] = []
    if any(gpu.id.startswith("nvidia:") for gpu in gpus):
        sources.append(nvidia.probe_nvidia_processes(timeout))
    if any(not gpu.id.startswith("nvidia:") for gpu in gpus):
        sources.append(tracker.sample_processes())
    return GpuSnapshot(gpus=gpus, processes=merge_process_lists(sources))
