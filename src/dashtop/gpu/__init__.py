"""GPU discovery, merge and background sampling."""

from dashtop.gpu.drm import DrmProcessTracker
from dashtop.gpu.monitor import GpuMonitor, SnapshotChannel
from dashtop.gpu.registry import (
    GpuProvider,
    GpuProviderRegistry,
    LspciProvider,
    NvidiaProvider,
    SysfsProvider,
    default_gpu_index,
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
    GpuSnapshot,
    GpuTelemetry,
)

__all__ = [
    "DrmProcessTracker",
    "GpuInfo",
    "GpuKind",
    "GpuMemory",
    "GpuMonitor",
    "GpuPreference",
    "GpuProcessUsage",
    "GpuProvider",
    "GpuProviderRegistry",
    "GpuSnapshot",
    "GpuTelemetry",
    "LspciProvider",
    "NvidiaProvider",
    "SnapshotChannel",
    "SysfsProvider",
    "default_gpu_index",
    "merge_gpu_lists",
    "merge_process_lists",
    "probe_gpus",
]
