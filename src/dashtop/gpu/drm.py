"""Per-process GPU usage from DRM fdinfo accounting files."""

import logging
import math
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from dashtop.gpu.types import GpuProcessUsage, merge_kind

log = logging.getLogger(__name__)

PROC_ROOT = Path("/proc")
DRM_CLASS_ROOT = Path("/sys/class/drm")

MEMORY_UNITS = {
    "B": 1,
    "KiB": 1024,
    "kB": 1024,
    "MiB": 1024**2,
    "GiB": 1024**3,
}

ENGINE_CORE = "core"
ENGINE_ENCODE = "encode"
ENGINE_DECODE = "decode"


@dataclass(slots=True)
class FdinfoSample:
    """Counters read from a single DRM file descriptor."""

    gpu_id: str = ""
    core_ns: int = 0
    enc_ns: int = 0
    dec_ns: int = 0
    vram_bytes: int = 0
    system_bytes: int = 0
    kind: str | None = None


@dataclass(slots=True)
class ProcessCounters:
    """Counters accumulated across all of a process's handles on one GPU."""

    core_ns: int = 0
    enc_ns: int = 0
    dec_ns: int = 0
    vram_bytes: int = 0
    system_bytes: int = 0
    kind: str | None = None

    def add(self, sample: FdinfoSample) -> None:
        self.core_ns += sample.core_ns
        self.enc_ns += sample.enc_ns
        self.dec_ns += sample.dec_ns
        self.vram_bytes += sample.vram_bytes
        self.system_bytes += sample.system_bytes
        self.kind = merge_kind(self.kind, sample.kind)

    @property
    def preferred_mem_bytes(self) -> int:
        return self.vram_bytes if self.vram_bytes > 0 else self.system_bytes


def classify_engine(name: str) -> str | None:
    lower = name.lower()
    if "enc" in lower:
        return ENGINE_ENCODE
    if "dec" in lower or "video" in lower:
        return ENGINE_DECODE
    if any(token in lower for token in ("render", "gfx", "compute", "3d")):
        return ENGINE_CORE
    return None


def engine_kind_hint(name: str) -> str | None:
    lower = name.lower()
    if "compute" in lower:
        return "C"
    if "render" in lower or "gfx" in lower or "3d" in lower:
        return "G"
    return None


def parse_engine_ns(value: str) -> int | None:
    parts = value.split()
    if not parts:
        return None
    try:
        return int(parts[0])
    except ValueError:
        return None


def parse_memory_bytes(value: str) -> int | None:
    parts = value.split()
    if not parts:
        return None
    try:
        amount = int(parts[0])
    except ValueError:
        return None
    unit = parts[1] if len(parts) > 1 else "B"
    return amount * MEMORY_UNITS.get(unit, 1)


def resolve_gpu_id(
    pdev: str | None, minor: int | None, drm_root: Path = DRM_CLASS_ROOT
) -> str | None:
    if pdev:
        return f"pci:{pdev}"
    if minor is None:
        return None
    node = f"renderD{minor}" if minor >= 128 else f"card{minor}"
    try:
        device = os.path.basename(os.readlink(drm_root / node / "device"))
    except OSError:
        return None
    return f"pci:{device}" if device else None


def parse_fdinfo(contents: str, drm_root: Path = DRM_CLASS_ROOT) -> FdinfoSample | None:
    """
    Parse one fdinfo file.

    Returns None for descriptors that are not DRM clients (no ``drm-driver``
    key) or whose device cannot be resolved.
    """
    driver = None
    pdev = None
    minor = None
    sample = FdinfoSample()

    for line in contents.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()

        if key == "drm-driver":
            driver = value
        elif key == "drm-pdev":
            pdev = value.split()[0] if value else None
        elif key == "drm-minor":
            try:
                minor = int(value.split()[0])
            except (ValueError, IndexError):
                minor = None
        elif key.startswith("drm-engine-capacity-"):
            continue
        elif key.startswith("drm-engine-"):
            name = key.removeprefix("drm-engine-")
            ns = parse_engine_ns(value)
            if ns is None:
                continue
            engine = classify_engine(name)
            if engine == ENGINE_CORE:
                sample.core_ns += ns
            elif engine == ENGINE_ENCODE:
                sample.enc_ns += ns
            elif engine == ENGINE_DECODE:
                sample.dec_ns += ns
            sample.kind = merge_kind(sample.kind, engine_kind_hint(name))
        elif key.startswith("drm-memory-"):
            amount = parse_memory_bytes(value)
            if amount is None:
                continue
            if "vram" in key or "local" in key:
                sample.vram_bytes += amount
            elif "system" in key or "gtt" in key or "shared" in key:
                sample.system_bytes += amount

    if driver is None:
        return None
    gpu_id = resolve_gpu_id(pdev, minor, drm_root)
    if gpu_id is None:
        return None
    sample.gpu_id = gpu_id
    return sample


def compute_pct(current: int, previous: int, interval_ns: float) -> float | None:
    if interval_ns <= 0:
        return None
    delta = max(current - previous, 0)
    return min(max(delta / interval_ns * 100.0, 0.0), 100.0)


def bytes_to_mb(value: int) -> int | None:
    if value <= 0:
        return None
    return math.ceil(value / (1024 * 1024))


class DrmProcessTracker:
    """
    Turns cumulative engine-time counters into utilization percentages.

    Keeps the previous sample so that each call reports the busy time over
    the elapsed wall-clock interval. The first call yields memory only.
    """

    def __init__(
        self,
        proc_root: Path = PROC_ROOT,
        drm_root: Path = DRM_CLASS_ROOT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._proc_root = proc_root
        self._drm_root = drm_root
        self._clock = clock
        self._last: dict[tuple[str, int], ProcessCounters] = {}
        self._last_time: float | None = None

    def collect(self) -> dict[tuple[str, int], ProcessCounters]:
        """Accumulate counters per (gpu id, pid) over every open DRM handle."""
        counters: dict[tuple[str, int], ProcessCounters] = {}
        try:
            entries = list(os.scandir(self._proc_root))
        except OSError as exc:
            log.debug("fdinfo scan unavailable: %s", exc)
            return counters

        for entry in entries:
            if not entry.name.isdigit():
                continue
            pid = int(entry.name)
            fdinfo_dir = Path(entry.path) / "fdinfo"
            try:
                fds = list(os.scandir(fdinfo_dir))
            except OSError:
                continue
            for fd in fds:
                try:
                    contents = Path(fd.path).read_text()
                except (OSError, UnicodeDecodeError):
                    continue
                sample = parse_fdinfo(contents, self._drm_root)
                if sample is None:
                    continue
                counters.setdefault((sample.gpu_id, pid), ProcessCounters()).add(sample)
        return counters

    def sample_processes(self) -> list[GpuProcessUsage]:
        now = self._clock()
        current = self.collect()
        interval_ns = None
        if self._last_time is not None and now > self._last_time:
            interval_ns = (now - self._last_time) * 1_000_000_000

        usages: list[GpuProcessUsage] = []
        for (gpu_id, pid), counters in current.items():
            sm_pct = enc_pct = dec_pct = None
            prev = self._last.get((gpu_id, pid))
            if interval_ns is not None and prev is not None:
                sm_pct = compute_pct(counters.core_ns, prev.core_ns, interval_ns)
                enc_pct = compute_pct(counters.enc_ns, prev.enc_ns, interval_ns)
                dec_pct = compute_pct(counters.dec_ns, prev.dec_ns, interval_ns)
            usages.append(
                GpuProcessUsage(
                    gpu_id=gpu_id,
                    pid=pid,
                    kind=counters.kind,
                    sm_pct=sm_pct,
                    enc_pct=enc_pct,
                    dec_pct=dec_pct,
                    fb_mb=bytes_to_mb(counters.preferred_mem_bytes),
                )
            )

        self._last = current
        self._last_time = now
        return usages
