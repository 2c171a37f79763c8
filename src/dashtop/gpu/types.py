"""GPU data types."""

from dataclasses import dataclass, field, fields, replace
from enum import Enum


class GpuKind(Enum):
    """Three-valued GPU classification."""

    DISCRETE = "discrete"
    INTEGRATED = "integrated"
    UNKNOWN = "unknown"

    @property
    def sort_rank(self) -> int:
        return {GpuKind.DISCRETE: 0, GpuKind.INTEGRATED: 1, GpuKind.UNKNOWN: 2}[self]


class GpuPreference(Enum):
    """Which GPU to select by default."""

    AUTO = "auto"
    DISCRETE = "discrete"
    INTEGRATED = "integrated"

    @classmethod
    def parse(cls, value: str) -> "GpuPreference | None":
        aliases = {"dgpu": "discrete", "igpu": "integrated"}
        value = value.strip().lower()
        try:
            return cls(aliases.get(value, value))
        except ValueError:
            return None


@dataclass(slots=True, frozen=True)
class GpuMemory:
    used_bytes: int
    total_bytes: int


@dataclass(slots=True, frozen=True)
class GpuTelemetry:
    """Per-GPU sensor readings; any field may be absent."""

    utilization_gpu_pct: float | None = None
    utilization_mem_pct: float | None = None
    temperature_c: float | None = None
    power_draw_w: float | None = None
    power_limit_w: float | None = None
    fan_speed_pct: float | None = None
    encoder_pct: float | None = None
    decoder_pct: float | None = None

    def merged_with(self, other: "GpuTelemetry") -> "GpuTelemetry":
        """Fill absent readings from another source, never overwriting."""
        updates = {}
        for f in fields(self):
            if getattr(self, f.name) is None and getattr(other, f.name) is not None:
                updates[f.name] = getattr(other, f.name)
        return replace(self, **updates) if updates else self


@dataclass(slots=True, frozen=True)
class GpuInfo:
    """
    One physical GPU as seen by one or more discovery sources.

    ``id`` is the merge join key across sources: ``nvidia:<index>`` for the
    vendor tool, ``pci:<slot>`` for PCI/sysfs, ``drm:<card>`` otherwise.
    """

    id: str
    name: str
    vendor: str | None = None
    device: str | None = None
    kind: GpuKind = GpuKind.UNKNOWN
    memory: GpuMemory | None = None
    driver: str | None = None
    driver_version: str | None = None
    telemetry: GpuTelemetry = field(default_factory=GpuTelemetry)


@dataclass(slots=True, frozen=True)
class GpuProcessUsage:
    """One sample per (gpu id, pid) pair."""

    gpu_id: str
    pid: int
    kind: str | None = None  # 'C' compute, 'G' graphics
    sm_pct: float | None = None
    mem_pct: float | None = None
    enc_pct: float | None = None
    dec_pct: float | None = None
    fb_mb: int | None = None


@dataclass(slots=True, frozen=True)
class GpuSnapshot:
    """A complete, self-consistent replacement of all GPU state."""

    gpus: list[GpuInfo]
    processes: list[GpuProcessUsage]


def merge_kind(current: str | None, incoming: str | None) -> str | None:
    """Compute ('C') dominates graphics ('G'); otherwise first seen wins."""
    if current == "C" or incoming is None:
        return current
    if current is None or incoming == "C":
        return incoming
    return current


def max_optional(current: float | None, incoming: float | None) -> float | None:
    if incoming is None:
        return current
    if current is None:
        return incoming
    return max(current, incoming)
