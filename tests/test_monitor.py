"""Tests for the GpuMonitor and its coalescing channel."""

import time

from dashtop.gpu.drm import DrmProcessTracker
from dashtop.gpu.monitor import GpuMonitor, SnapshotChannel
from dashtop.gpu.registry import GpuProvider, GpuProviderRegistry
from dashtop.gpu.types import GpuInfo, GpuKind, GpuSnapshot


class StaticProvider(GpuProvider):
    name = "sysfs"
    priority = 25

    def __init__(self):
        self.calls = 0

    def probe(self, skip_nvidia=False):
        self.calls += 1
        return [GpuInfo(id="pci:0000:03:00.0", name="Test GPU", kind=GpuKind.DISCRETE)]


class FlakyProvider(StaticProvider):
    """Raises on the first probe, then behaves."""

    def probe(self, skip_nvidia=False):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("first round fails")
        return super().probe(skip_nvidia)


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def make_monitor(tmp_path, provider=None, interval=0.1):
    channel: SnapshotChannel[GpuSnapshot] = SnapshotChannel()
    registry = GpuProviderRegistry([provider or StaticProvider()])
    tracker = DrmProcessTracker(proc_root=tmp_path, drm_root=tmp_path)
    return channel, GpuMonitor(channel, interval=interval, registry=registry, tracker=tracker)


class TestSnapshotChannel:
    """Tests for SnapshotChannel."""

    def test_drain_empty(self):
        """Test draining an empty channel returns None."""
        channel: SnapshotChannel[int] = SnapshotChannel()
        assert channel.drain() is None

    def test_latest_value_wins(self):
        """Test unread values are replaced by newer ones."""
        channel: SnapshotChannel[int] = SnapshotChannel()
        for value in range(5):
            assert channel.publish(value)
        assert channel.drain() == 4
        assert channel.drain() is None

    def test_publish_after_close(self):
        """Test publishing into a closed channel fails."""
        channel: SnapshotChannel[int] = SnapshotChannel()
        channel.close()
        assert channel.closed
        assert not channel.publish(1)


class TestGpuMonitor:
    """Tests for GpuMonitor class."""

    def test_monitor_creation(self, tmp_path):
        """Test GpuMonitor can be instantiated without starting."""
        _, monitor = make_monitor(tmp_path, interval=2.0)
        assert monitor.interval == 2.0
        assert not monitor.is_running

    def test_interval_minimum(self, tmp_path):
        """Test interval has a minimum value."""
        _, monitor = make_monitor(tmp_path, interval=0.01)
        assert monitor.interval == 0.1

    def test_publishes_snapshots(self, tmp_path):
        """Test the loop publishes complete snapshots."""
        channel, monitor = make_monitor(tmp_path)
        received = []

        def got_snapshot():
            snapshot = channel.drain()
            if snapshot is not None:
                received.append(snapshot)
            return bool(received)

        try:
            monitor.start()
            assert monitor.is_running
            assert wait_for(got_snapshot)
        finally:
            monitor.stop()

        snapshot = received[0]
        assert [gpu.id for gpu in snapshot.gpus] == ["pci:0000:03:00.0"]
        assert snapshot.processes == []
        assert not monitor.is_running

    def test_start_twice_is_noop(self, tmp_path):
        """Test calling start on a running monitor keeps one thread."""
        _, monitor = make_monitor(tmp_path)
        try:
            monitor.start()
            thread = monitor._thread
            monitor.start()
            assert monitor._thread is thread
        finally:
            monitor.stop()

    def test_survives_failed_round(self, tmp_path):
        """Test an exception in one round does not end sampling."""
        provider = FlakyProvider()
        channel, monitor = make_monitor(tmp_path, provider=provider)
        try:
            monitor.start()
            assert wait_for(lambda: provider.calls >= 3)
            assert monitor.is_running
        finally:
            monitor.stop()

    def test_loop_ends_when_channel_closed(self, tmp_path):
        """Test the thread exits once the consumer has closed the channel."""
        channel, monitor = make_monitor(tmp_path)
        monitor.start()
        channel.close()
        assert wait_for(lambda: not monitor._thread.is_alive())
        monitor.stop()
