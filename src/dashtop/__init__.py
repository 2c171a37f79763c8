"""dashtop - live process, GPU and container dashboard."""

__version__ = "0.1.0"
