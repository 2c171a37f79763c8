"""Exception hierarchy for dashtop."""


class DashtopError(Exception):
    """Base exception for all dashtop errors."""


class ProbeError(DashtopError):
    """An external probe (command or tool) was unavailable, failed or timed out."""
