"""PCI enumeration of display controllers via lspci."""

from dashtop.commands import try_command
from dashtop.gpu.classify import classify_gpu_kind, guess_vendor_name
from dashtop.gpu.types import GpuInfo

DISPLAY_CLASSES = ("vga", "3d controller", "display controller")


def is_display_class(value: str) -> bool:
    value = value.lower()
    return any(cls in value for cls in DISPLAY_CLASSES)


def parse_machine_line(line: str) -> dict[str, str]:
    """Split one ``lspci -mm`` line of ``Key: "Value"`` pairs into a dict."""
    fields: dict[str, str] = {}
    parts = line.split('"')
    # parts alternate: key, value, key, value, ...
    for key, value in zip(parts[0::2], parts[1::2]):
        fields[key.strip().rstrip(":")] = value
    return fields


def parse_lspci_machine(output: str, skip_nvidia: bool = False) -> list[GpuInfo]:
    """Parse ``lspci -mm -D`` output (quoted key/value pairs)."""
    gpus: list[GpuInfo] = []
    for line in output.splitlines():
        fields = parse_machine_line(line)
        try:
            slot = fields["Slot"]
            cls = fields["Class"]
            vendor = fields["Vendor"]
            device = fields["Device"]
        except KeyError:
            continue
        if not is_display_class(cls):
            continue
        if skip_nvidia and "nvidia" in vendor.lower():
            continue
        gpus.append(
            GpuInfo(
                id=f"pci:{slot}",
                name=f"{vendor} {device}".strip(),
                vendor=vendor,
                device=device,
                kind=classify_gpu_kind(vendor, device, slot),
            )
        )
    return gpus


def parse_lspci_plain(output: str, skip_nvidia: bool = False) -> list[GpuInfo]:
    """Parse plain ``lspci -D`` lines: ``<slot> <class>: <description>``."""
    gpus: list[GpuInfo] = []
    for line in output.splitlines():
        slot, sep, rest = line.partition(" ")
        if not sep:
            continue
        cls, sep, desc = rest.partition(":")
        if not sep or not is_display_class(cls):
            continue
        desc = desc.strip()
        if skip_nvidia and "nvidia" in desc.lower():
            continue
        vendor = guess_vendor_name(desc)
        gpus.append(
            GpuInfo(
                id=f"pci:{slot}",
                name=desc,
                vendor=vendor,
                device=desc,
                kind=classify_gpu_kind(vendor, desc, slot),
            )
        )
    return gpus


def probe_lspci_gpus(timeout: float, skip_nvidia: bool = False) -> list[GpuInfo]:
    output = try_command(["lspci", "-mm", "-D"], timeout)
    if output is not None:
        gpus = parse_lspci_machine(output, skip_nvidia)
        if gpus:
            return gpus

    output = try_command(["lspci", "-D"], timeout)
    if output is None:
        return []
    return parse_lspci_plain(output, skip_nvidia)
