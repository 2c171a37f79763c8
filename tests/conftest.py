"""Shared fixtures for dashtop tests."""

import pytest

from dashtop.inventory import HostInventory
from dashtop.models import HostTotals, ProcessInfo


def make_proc(
    pid: int,
    name: str | None = None,
    ppid: int | None = 1,
    cpu: float = 0.0,
    mem: int = 0,
    uid: int | None = 1000,
    user: str | None = "alice",
    status: str = "sleeping",
    start_time: float = 100.0,
) -> ProcessInfo:
    return ProcessInfo(
        pid=pid,
        ppid=ppid,
        name=name or f"proc{pid}",
        user=user,
        uid=uid,
        cpu_percent=cpu,
        memory_bytes=mem,
        status=status,
        start_time=start_time,
        uptime_seconds=50.0,
    )


class FakeInventory(HostInventory):
    """In-memory host inventory recording refreshes and signals."""

    def __init__(self, processes: list[ProcessInfo] | None = None, uid: int | None = 1000):
        self._uid = uid
        self.set_processes(processes or [])
        self.live: dict[int, ProcessInfo | None] = {}
        self.environs: dict[int, dict[str, str]] = {}
        self.environ_calls: list[int] = []
        self.terminated: list[int] = []
        self.terminate_result: bool | None = True
        self.refresh_count = 0

    def set_processes(self, processes: list[ProcessInfo]) -> None:
        self._processes = list(processes)

    def refresh(self) -> None:
        self.refresh_count += 1

    def processes(self) -> list[ProcessInfo]:
        return list(self._processes)

    def totals(self) -> HostTotals:
        return HostTotals(
            memory_total=16 * 1024**3,
            memory_used=4 * 1024**3,
            swap_total=0,
            swap_used=0,
            load_avg=(0.5, 0.25, 0.1),
            uptime_seconds=3600.0,
        )

    def process(self, pid: int) -> ProcessInfo | None:
        if pid in self.live:
            return self.live[pid]
        return next((p for p in self._processes if p.pid == pid), None)

    def environ(self, pid: int) -> dict[str, str]:
        self.environ_calls.append(pid)
        return self.environs.get(pid, {})

    def current_uid(self) -> int | None:
        return self._uid

    def terminate(self, pid: int) -> bool | None:
        self.terminated.append(pid)
        return self.terminate_result


@pytest.fixture
def inventory() -> FakeInventory:
    return FakeInventory(
        [
            make_proc(1, "init", ppid=None, cpu=1.0, uid=0, user="root"),
            make_proc(2, "bash", cpu=10.0, mem=2048),
            make_proc(3, "vim", ppid=2, cpu=5.0, mem=4096),
        ]
    )
