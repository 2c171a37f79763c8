"""Data models for dashtop."""

from dataclasses import dataclass
from enum import Enum


class SortDir(Enum):
    """Sort direction for the process table."""

    ASC = "asc"
    DESC = "desc"

    def toggle(self) -> "SortDir":
        return SortDir.DESC if self is SortDir.ASC else SortDir.ASC

    @classmethod
    def parse(cls, value: str) -> "SortDir | None":
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class SortKey(Enum):
    """Sort keys for the process table."""

    PID = "pid"
    USER = "user"
    CPU = "cpu"
    MEM = "mem"
    UPTIME = "uptime"
    STATUS = "stat"
    NAME = "name"

    @property
    def default_dir(self) -> SortDir:
        """Natural direction: busiest/oldest first for numeric load keys."""
        if self in (SortKey.CPU, SortKey.MEM, SortKey.UPTIME):
            return SortDir.DESC
        return SortDir.ASC

    def next(self) -> "SortKey":
        keys = list(SortKey)
        return keys[(keys.index(self) + 1) % len(keys)]

    def prev(self) -> "SortKey":
        keys = list(SortKey)
        return keys[(keys.index(self) - 1) % len(keys)]

    @classmethod
    def parse(cls, value: str) -> "SortKey | None":
        aliases = {"up": "uptime", "status": "stat"}
        value = value.strip().lower()
        try:
            return cls(aliases.get(value, value))
        except ValueError:
            return None


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Immutable per-process record supplied by the host inventory."""

    pid: int
    ppid: int | None
    name: str
    user: str | None
    uid: int | None
    cpu_percent: float  # 0.0 - 100.0 * core_count
    memory_bytes: int  # RSS
    status: str  # 'running', 'sleeping', 'zombie', ...
    start_time: float  # Seconds since the epoch
    uptime_seconds: float


@dataclass(slots=True, frozen=True)
class HostTotals:
    """Host-level counters."""

    memory_total: int
    memory_used: int
    swap_total: int
    swap_used: int
    load_avg: tuple[float, float, float]
    uptime_seconds: float


@dataclass(slots=True, frozen=True)
class ProcessRow:
    """One row of the process table, rebuilt wholesale every refresh."""

    pid: int
    user: str | None
    name: str
    cpu_percent: float
    memory_bytes: int
    status: str
    start_time: float
    uptime_seconds: float
    is_current_user: bool = False
    is_non_root: bool = False
    is_gui: bool = False
    gpu_sm_pct: float | None = None
    gpu_mem_pct: float | None = None
    gpu_enc_pct: float | None = None
    gpu_dec_pct: float | None = None
    gpu_fb_bytes: int | None = None
    gpu_kind: str | None = None  # 'C' compute, 'G' graphics
