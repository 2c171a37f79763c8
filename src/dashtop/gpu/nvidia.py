"""NVIDIA discovery and per-process usage via nvidia-smi."""

import logging
from dataclasses import replace

from dashtop.commands import try_command
from dashtop.gpu.types import GpuInfo, GpuKind, GpuMemory, GpuProcessUsage, GpuTelemetry

log = logging.getLogger(__name__)

QUERY_BASE = "index,name,memory.used,memory.total,driver_version"
QUERY_EXTENDED = (
    "index,name,memory.used,memory.total,utilization.gpu,utilization.memory,"
    "temperature.gpu,power.draw,power.limit,fan.speed,encoder.stats.average,"
    "decoder.stats.average,driver_version"
)
QUERY_UUID = "index,uuid"
QUERY_COMPUTE_APPS = "gpu_uuid,pid,used_memory"

CSV_FORMAT = "--format=csv,noheader,nounits"

MIB = 1024 * 1024


def _absent(value: str) -> bool:
    value = value.strip()
    return not value or value == "-" or value.lower() == "n/a"


def _opt_str(value: str) -> str | None:
    return None if _absent(value) else value.strip()


def _opt_float(value: str) -> float | None:
    if _absent(value):
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _opt_int(value: str) -> int | None:
    if _absent(value):
        return None
    try:
        return int(value)
    except ValueError:
        return None


def gpu_id_for_index(index: int) -> str:
    return f"nvidia:{index}"


def parse_gpu_query(output: str) -> list[GpuInfo] | None:
    """
    Parse ``--query-gpu`` CSV rows.

    Accepts the 4/5 column base query and the 12/13 column extended query.
    Returns None when any row has an unexpected column count, so the caller
    can retry with the base query.
    """
    gpus: list[GpuInfo] = []
    unexpected_format = False

    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = [part.strip() for part in line.split(",")]
        count = len(parts)
        if count < 4 or (count not in (4, 5) and count < 12):
            unexpected_format = True
            continue

        try:
            index = int(parts[0])
            used = int(parts[2])
            total = int(parts[3])
        except ValueError:
            continue

        if count == 5:
            driver_version = _opt_str(parts[4])
        elif count >= 13:
            driver_version = _opt_str(parts[12])
        else:
            driver_version = None

        if count >= 12:
            telemetry = GpuTelemetry(
                utilization_gpu_pct=_opt_float(parts[4]),
                utilization_mem_pct=_opt_float(parts[5]),
                temperature_c=_opt_float(parts[6]),
                power_draw_w=_opt_float(parts[7]),
                power_limit_w=_opt_float(parts[8]),
                fan_speed_pct=_opt_float(parts[9]),
                encoder_pct=_opt_float(parts[10]),
                decoder_pct=_opt_float(parts[11]),
            )
        else:
            telemetry = GpuTelemetry()

        name = parts[1]
        gpus.append(
            GpuInfo(
                id=gpu_id_for_index(index),
                name=name,
                vendor="NVIDIA",
                device=name,
                kind=GpuKind.DISCRETE,
                memory=GpuMemory(used_bytes=used * MIB, total_bytes=total * MIB),
                driver="nvidia",
                driver_version=driver_version,
                telemetry=telemetry,
            )
        )

    return None if unexpected_format else gpus


def probe_nvidia_gpus(timeout: float) -> list[GpuInfo]:
    """Query nvidia-smi, falling back from the extended to the base query."""
    for query in (QUERY_EXTENDED, QUERY_BASE):
        output = try_command(["nvidia-smi", f"--query-gpu={query}", CSV_FORMAT], timeout)
        if output is None:
            continue
        gpus = parse_gpu_query(output)
        if gpus is not None:
            return gpus
        log.debug("nvidia-smi: unexpected output for query %s", query)
    return []


def parse_pmon(output: str) -> list[GpuProcessUsage]:
    """Parse ``nvidia-smi pmon -c 1`` output."""
    usages: list[GpuProcessUsage] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        cols = line.split()
        if len(cols) < 2:
            continue
        try:
            gpu_index = int(cols[0])
            pid = int(cols[1])
        except ValueError:
            continue
        if pid == 0:
            continue

        def col(i: int) -> str:
            return cols[i] if i < len(cols) else ""

        kind = col(2).strip()
        usages.append(
            GpuProcessUsage(
                gpu_id=gpu_id_for_index(gpu_index),
                pid=pid,
                kind=kind[0] if kind and kind != "-" else None,
                sm_pct=_opt_float(col(3)),
                mem_pct=_opt_float(col(4)),
                enc_pct=_opt_float(col(5)),
                dec_pct=_opt_float(col(6)),
                fb_mb=_opt_int(col(7)),
            )
        )
    return usages


def parse_uuid_map(output: str) -> dict[str, int]:
    """Map GPU UUID to index from ``--query-gpu=index,uuid``."""
    mapping: dict[str, int] = {}
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = [part.strip() for part in line.split(",")]
        if len(parts) < 2 or not parts[1]:
            continue
        try:
            mapping[parts[1]] = int(parts[0])
        except ValueError:
            continue
    return mapping


def parse_compute_apps(output: str) -> list[tuple[str, int, int]]:
    """Parse ``--query-compute-apps`` rows into (uuid, pid, used MiB)."""
    apps: list[tuple[str, int, int]] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = [part.strip() for part in line.split(",")]
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[1])
        except ValueError:
            continue
        used = _opt_int(parts[2])
        if used is None:
            continue
        apps.append((parts[0], pid, used))
    return apps


def apply_compute_apps(
    by_key: dict[tuple[str, int], GpuProcessUsage],
    uuid_map: dict[str, int],
    apps: list[tuple[str, int, int]],
) -> None:
    """Overlay compute-app memory onto pmon samples, adding missing pids."""
    for uuid, pid, used_mb in apps:
        index = uuid_map.get(uuid)
        if index is None:
            continue
        gpu_id = gpu_id_for_index(index)
        current = by_key.get((gpu_id, pid))
        if current is None:
            by_key[(gpu_id, pid)] = GpuProcessUsage(gpu_id=gpu_id, pid=pid, fb_mb=used_mb)
        else:
            by_key[(gpu_id, pid)] = replace(current, fb_mb=used_mb)


def probe_nvidia_processes(timeout: float) -> list[GpuProcessUsage]:
    by_key: dict[tuple[str, int], GpuProcessUsage] = {}

    output = try_command(["nvidia-smi", "pmon", "-c", "1"], timeout)
    if output is not None:
        for usage in parse_pmon(output):
            by_key[(usage.gpu_id, usage.pid)] = usage

    apps_output = try_command(
        ["nvidia-smi", f"--query-compute-apps={QUERY_COMPUTE_APPS}", CSV_FORMAT], timeout
    )
    if apps_output is not None:
        apps = parse_compute_apps(apps_output)
        if apps:
            uuid_output = try_command(
                ["nvidia-smi", f"--query-gpu={QUERY_UUID}", CSV_FORMAT], timeout
            )
            uuid_map = parse_uuid_map(uuid_output) if uuid_output else {}
            if uuid_map:
                apply_compute_apps(by_key, uuid_map, apps)

    return list(by_key.values())
