"""GPU discovery through the Linux DRM class directory in sysfs."""

import functools
import logging
import os
from pathlib import Path

from dashtop.gpu.classify import classify_gpu_kind, vendor_name_from_id
from dashtop.gpu.types import GpuInfo, GpuMemory, GpuTelemetry

log = logging.getLogger(__name__)

DRM_CLASS_ROOT = Path("/sys/class/drm")
MODULE_ROOT = Path("/sys/module")

OPEN_SOURCE_DRIVERS = frozenset({"amdgpu", "radeon", "i915", "xe", "nouveau", "vmwgfx"})

MESA_VERSION_FILES = (
    "/usr/share/mesa/mesa.version",
    "/usr/share/mesa/mesa_version",
    "/usr/share/mesa/version",
    "/usr/lib/mesa/mesa.version",
    "/usr/lib/mesa/mesa_version",
    "/usr/lib/mesa/version",
)


def read_text(path: Path) -> str | None:
    try:
        value = path.read_text().strip()
    except (OSError, UnicodeDecodeError):
        return None
    return value or None


def read_int(path: Path) -> int | None:
    value = read_text(path)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def read_hex(path: Path) -> int | None:
    value = read_text(path)
    if value is None:
        return None
    try:
        return int(value.removeprefix("0x"), 16)
    except ValueError:
        return None


def read_link_name(path: Path) -> str | None:
    try:
        return os.path.basename(os.readlink(path)) or None
    except OSError:
        return None


@functools.lru_cache(maxsize=1)
def detect_mesa_version() -> str | None:
    for path in MESA_VERSION_FILES:
        version = read_text(Path(path))
        if version:
            return version
    return None


def driver_version(driver: str | None, module_root: Path = MODULE_ROOT) -> str | None:
    if driver is None:
        return None
    base = module_root / driver
    version = read_text(base / "version") or read_text(base / "srcversion")
    if version is None and driver in OPEN_SOURCE_DRIVERS:
        version = detect_mesa_version()
    return version


def read_vram(device_path: Path) -> GpuMemory | None:
    total = read_int(device_path / "mem_info_vram_total")
    if not total:
        return None
    used = read_int(device_path / "mem_info_vram_used") or 0
    return GpuMemory(used_bytes=used, total_bytes=total)


def _hwmon_dirs(device_path: Path) -> list[Path]:
    try:
        return sorted(p for p in (device_path / "hwmon").iterdir() if p.is_dir())
    except OSError:
        return []


def _first_int(dirs: list[Path], names: tuple[str, ...]) -> int | None:
    for directory in dirs:
        for name in names:
            value = read_int(directory / name)
            if value is not None:
                return value
    return None


def _max_temperature(dirs: list[Path]) -> float | None:
    best: float | None = None
    for directory in dirs:
        try:
            entries = list(directory.iterdir())
        except OSError:
            continue
        for entry in entries:
            if not (entry.name.startswith("temp") and entry.name.endswith("_input")):
                continue
            value = read_int(entry)
            if value is not None:
                temp = value / 1000.0
                best = temp if best is None else max(best, temp)
    return best


def _fan_percent(dirs: list[Path]) -> float | None:
    for directory in dirs:
        speed = read_int(directory / "fan1_input")
        top = read_int(directory / "fan1_max")
        if speed is not None and top:
            return speed / top * 100.0
        pwm = read_int(directory / "pwm1")
        if pwm is not None:
            pwm_max = read_int(directory / "pwm1_max") or 255
            return pwm / pwm_max * 100.0
    return None


def read_telemetry(device_path: Path) -> GpuTelemetry:
    hwmon = _hwmon_dirs(device_path)

    def percent(*names: str) -> float | None:
        for name in names:
            value = read_int(device_path / name)
            if value is not None:
                return float(min(max(value, 0), 100))
        return None

    power_draw = _first_int(hwmon, ("power1_average", "power1_input"))
    power_limit = _first_int(hwmon, ("power1_cap", "power1_cap_max"))
    return GpuTelemetry(
        utilization_gpu_pct=percent("gpu_busy_percent", "gt_busy_percent"),
        utilization_mem_pct=percent("mem_busy_percent"),
        temperature_c=_max_temperature(hwmon),
        # hwmon reports microwatts
        power_draw_w=power_draw / 1_000_000 if power_draw is not None else None,
        power_limit_w=power_limit / 1_000_000 if power_limit is not None else None,
        fan_speed_pct=_fan_percent(hwmon),
    )


def probe_sysfs_gpus(
    skip_nvidia: bool = False,
    drm_root: Path = DRM_CLASS_ROOT,
    module_root: Path = MODULE_ROOT,
) -> list[GpuInfo]:
    """Enumerate ``cardN`` entries (connectors such as ``card0-DP-1`` are skipped)."""
    try:
        cards = sorted(drm_root.iterdir())
    except OSError:
        return []

    gpus: list[GpuInfo] = []
    for card in cards:
        name = card.name
        if not name.startswith("card") or "-" in name:
            continue
        try:
            gpu = _probe_card(card, module_root)
        except OSError as exc:
            log.debug("sysfs: skipping %s: %s", card, exc)
            continue
        if skip_nvidia and gpu.vendor == "NVIDIA":
            continue
        gpus.append(gpu)
    return gpus


def _probe_card(card: Path, module_root: Path) -> GpuInfo:
    device_path = card / "device"
    slot = read_link_name(device_path)
    vendor_id = read_hex(device_path / "vendor")
    device_id = read_hex(device_path / "device")
    driver = read_link_name(device_path / "driver")
    vendor = vendor_name_from_id(vendor_id, driver)

    display = vendor
    if device_id is not None:
        display = f"{display} {device_id:04x}"
    if driver:
        display = f"{display} ({driver})"

    return GpuInfo(
        id=f"pci:{slot}" if slot else f"drm:{card.name}",
        name=display,
        vendor=vendor,
        device=f"{device_id:04x}" if device_id is not None else None,
        kind=classify_gpu_kind(vendor, display, slot, vendor_id),
        memory=read_vram(device_path),
        driver=driver,
        driver_version=driver_version(driver, module_root),
        telemetry=read_telemetry(device_path),
    )
