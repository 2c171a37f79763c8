"""Transient status line messages."""

from dataclasses import dataclass
from enum import Enum

STATUS_LIFETIME = 3.0


class StatusLevel(Enum):
    INFO = "info"
    WARN = "warn"


@dataclass(slots=True, frozen=True)
class StatusMessage:
    """A user-visible outcome that disappears after a few seconds."""

    level: StatusLevel
    text: str
    expires_at: float

    @classmethod
    def create(cls, level: StatusLevel, text: str, now: float) -> "StatusMessage":
        return cls(level=level, text=text, expires_at=now + STATUS_LIFETIME)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
