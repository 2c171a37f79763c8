"""Background GPU sampling loop for dashtop."""

import logging
import threading
from queue import Empty, Full, Queue
from typing import Generic, TypeVar

from dashtop.gpu.drm import DrmProcessTracker
from dashtop.gpu.registry import GpuProviderRegistry, probe_gpus
from dashtop.gpu.types import GpuSnapshot

log = logging.getLogger(__name__)

T = TypeVar("T")

MIN_INTERVAL = 0.1


class SnapshotChannel(Generic[T]):
    """
    Single-slot, latest-value-wins hand-off between two threads.

    The producer never blocks: publishing over an unread value replaces it.
    The consumer never blocks either: ``drain()`` returns the newest value or
    None. Once closed, ``publish()`` returns False so the producer can stop.
    """

    def __init__(self) -> None:
        self._queue: Queue[T] = Queue(maxsize=1)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def publish(self, value: T) -> bool:
        if self._closed.is_set():
            return False
        while True:
            try:
                self._queue.put_nowait(value)
                return True
            except Full:
                try:
                    self._queue.get_nowait()
                except Empty:
                    pass

    def drain(self) -> T | None:
        latest = None
        while True:
            try:
                latest = self._queue.get_nowait()
            except Empty:
                return latest

    def close(self) -> None:
        self._closed.set()


class GpuMonitor:
    """
    GPU monitor that samples the provider registry on a daemon thread.

    Every interval it publishes a complete ``GpuSnapshot`` into a
    ``SnapshotChannel``. It never touches the consumer's state; the loop ends
    when the channel is closed or ``stop()`` is called.
    """

    def __init__(
        self,
        channel: SnapshotChannel[GpuSnapshot],
        interval: float = 2.0,
        registry: GpuProviderRegistry | None = None,
        tracker: DrmProcessTracker | None = None,
    ) -> None:
        """
        Initialize the GpuMonitor.

        Args:
            channel: Channel to publish snapshots into.
            interval: Seconds between samples. Clamped to at least 0.1s.
            registry: Discovery providers; defaults to the built-in set.
            tracker: Per-process accounting reader owned by the loop thread.
        """
        self._channel = channel
        self._interval = max(MIN_INTERVAL, interval)
        self._registry = registry or GpuProviderRegistry.with_defaults()
        self._tracker = tracker or DrmProcessTracker()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="GpuMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitoring thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                snapshot = probe_gpus(self._registry, self._tracker)
            except Exception:
                # One bad round must not end sampling
                log.debug("GPU sampling round failed", exc_info=True)
            else:
                if not self._channel.publish(snapshot):
                    return

            self._stop_event.wait(timeout=self._interval)
