"""Runtime configuration for dashtop."""

from dataclasses import dataclass

from dashtop.gpu.types import GpuPreference
from dashtop.models import SortDir, SortKey

MIN_RATE = 0.1


@dataclass(slots=True, frozen=True)
class Config:
    """
    Settings consumed once when the live state is constructed.

    Rates are in seconds and clamped to at least 0.1s. When ``sort_dir`` is
    left unset it follows the natural direction of ``sort_key``.
    """

    tick_rate: float = 1.0
    gpu_poll_rate: float = 2.0
    gpu_enabled: bool = True
    gpu_preference: GpuPreference = GpuPreference.AUTO
    sort_key: SortKey = SortKey.CPU
    sort_dir: SortDir | None = None

    def __post_init__(self) -> None:
        # Frozen: assign through object.__setattr__
        object.__setattr__(self, "tick_rate", max(MIN_RATE, self.tick_rate))
        object.__setattr__(self, "gpu_poll_rate", max(MIN_RATE, self.gpu_poll_rate))
        if self.sort_dir is None:
            object.__setattr__(self, "sort_dir", self.sort_key.default_dir)
