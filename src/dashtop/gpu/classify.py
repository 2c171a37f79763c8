"""Vendor and kind heuristics for sources lacking authoritative vendor data."""

from dashtop.gpu.types import GpuKind

VENDOR_INTEL = 0x8086
VENDOR_NVIDIA = 0x10DE
VENDOR_AMD = (0x1002, 0x1022)

INTEGRATED_SLOT_PREFIXES = ("0000:00:02", "00:02")

INTEGRATED_NAME_PATTERNS = (
    "integrated",
    "apu",
    "radeon graphics",
    "uhd",
    "iris",
    "vega 8",
    "vega 7",
    "vega 6",
)


def is_integrated_slot(slot: str) -> bool:
    return slot.startswith(INTEGRATED_SLOT_PREFIXES)


def classify_gpu_kind(
    vendor: str,
    device: str,
    slot: str | None = None,
    vendor_id: int | None = None,
) -> GpuKind:
    """
    Classify a GPU as discrete, integrated or unknown.

    Intel is always integrated and NVIDIA always discrete. AMD parts are
    integrated only when the name or PCI slot says so. Other vendors fall
    back to the same name/slot heuristics, else unknown.
    """
    vendor_lower = vendor.lower()
    device_lower = device.lower()

    if vendor_id == VENDOR_INTEL or "intel" in vendor_lower:
        return GpuKind.INTEGRATED
    if vendor_id == VENDOR_NVIDIA or "nvidia" in vendor_lower:
        return GpuKind.DISCRETE

    looks_integrated = any(p in device_lower for p in INTEGRATED_NAME_PATTERNS) or (
        slot is not None and is_integrated_slot(slot)
    )

    is_amd = vendor_id in VENDOR_AMD or "amd" in vendor_lower or "ati" in vendor_lower
    if is_amd:
        return GpuKind.INTEGRATED if looks_integrated else GpuKind.DISCRETE

    return GpuKind.INTEGRATED if looks_integrated else GpuKind.UNKNOWN


def guess_vendor_name(description: str) -> str:
    """Short vendor label from a free-form device description."""
    lower = description.lower()
    if "nvidia" in lower:
        return "NVIDIA"
    if "amd" in lower or "ati" in lower or "advanced micro devices" in lower:
        return "AMD"
    if "intel" in lower:
        return "Intel"
    return "GPU"


def vendor_name_from_id(vendor_id: int | None, driver: str | None = None) -> str:
    if vendor_id == VENDOR_INTEL:
        return "Intel"
    if vendor_id == VENDOR_NVIDIA:
        return "NVIDIA"
    if vendor_id in VENDOR_AMD:
        return "AMD"
    if driver:
        if "amdgpu" in driver or "radeon" in driver:
            return "AMD"
        if "i915" in driver or driver == "xe":
            return "Intel"
        if "nouveau" in driver or "nvidia" in driver:
            return "NVIDIA"
    return "GPU"
