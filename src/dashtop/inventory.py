"""Host inventory: the process list and host totals, backed by psutil."""

import logging
import os
import time
from abc import ABC, abstractmethod

import psutil

from dashtop.models import HostTotals, ProcessInfo

log = logging.getLogger(__name__)

PROCESS_ATTRS = [
    "pid",
    "ppid",
    "name",
    "username",
    "status",
    "cpu_percent",
    "memory_info",
    "create_time",
]
if psutil.POSIX:
    PROCESS_ATTRS.append("uids")


class HostInventory(ABC):
    """Source of per-process attributes and host-level counters."""

    @abstractmethod
    def refresh(self) -> None:
        """Take a new sample of the process list and host totals."""

    @abstractmethod
    def processes(self) -> list[ProcessInfo]:
        """Processes from the latest sample."""

    @abstractmethod
    def totals(self) -> HostTotals:
        """Host counters from the latest sample."""

    @abstractmethod
    def process(self, pid: int) -> ProcessInfo | None:
        """Freshly re-read one process; None when it no longer exists."""

    @abstractmethod
    def environ(self, pid: int) -> dict[str, str]:
        """Environment of a process; empty when unreadable."""

    @abstractmethod
    def current_uid(self) -> int | None:
        """Real user id of this program, None off POSIX."""

    @abstractmethod
    def terminate(self, pid: int) -> bool | None:
        """
        Send a terminate signal.

        Returns True when sent, False when rejected and None when the
        platform has no signal support.
        """


def _info_from_dict(info: dict, now: float) -> ProcessInfo:
    uids = info.get("uids")
    mem_info = info.get("memory_info")
    start_time = info.get("create_time") or 0.0
    return ProcessInfo(
        pid=info.get("pid", 0),
        ppid=info.get("ppid"),
        name=info.get("name") or "",
        user=info.get("username"),
        uid=uids.real if uids else None,
        cpu_percent=info.get("cpu_percent") or 0.0,
        memory_bytes=mem_info.rss if mem_info else 0,
        status=info.get("status") or "?",
        start_time=start_time,
        uptime_seconds=max(now - start_time, 0.0) if start_time else 0.0,
    )


class PsutilInventory(HostInventory):
    """
    Host inventory using psutil.

    Handles NoSuchProcess, AccessDenied and ZombieProcess per process so that
    one vanished or protected process never aborts a sample.
    """

    def __init__(self) -> None:
        self._processes: list[ProcessInfo] = []
        self._totals = HostTotals(
            memory_total=0,
            memory_used=0,
            swap_total=0,
            swap_used=0,
            load_avg=(0.0, 0.0, 0.0),
            uptime_seconds=0.0,
        )

    def refresh(self) -> None:
        self._processes = self._collect_processes()
        self._totals = self._collect_totals()

    def processes(self) -> list[ProcessInfo]:
        return list(self._processes)

    def totals(self) -> HostTotals:
        return self._totals

    def _collect_totals(self) -> HostTotals:
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        try:
            load_avg = psutil.getloadavg()
        except (AttributeError, OSError):
            load_avg = (0.0, 0.0, 0.0)
        return HostTotals(
            memory_total=mem.total,
            memory_used=mem.used,
            swap_total=swap.total,
            swap_used=swap.used,
            load_avg=tuple(load_avg),
            uptime_seconds=time.time() - psutil.boot_time(),
        )

    def _collect_processes(self) -> list[ProcessInfo]:
        processes: list[ProcessInfo] = []
        now = time.time()

        for proc in psutil.process_iter(attrs=PROCESS_ATTRS):
            try:
                with proc.oneshot():
                    processes.append(_info_from_dict(proc.info, now))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        return processes

    def process(self, pid: int) -> ProcessInfo | None:
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                info = proc.as_dict(attrs=PROCESS_ATTRS)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None
        except psutil.AccessDenied:
            log.debug("access denied reading pid %d", pid)
            return None
        return _info_from_dict(info, time.time())

    def environ(self, pid: int) -> dict[str, str]:
        try:
            return psutil.Process(pid).environ()
        except (psutil.Error, OSError):
            return {}

    def current_uid(self) -> int | None:
        getuid = getattr(os, "getuid", None)
        return getuid() if getuid is not None else None

    def terminate(self, pid: int) -> bool | None:
        if not psutil.POSIX and not psutil.WINDOWS:
            return None
        try:
            psutil.Process(pid).terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied, OSError) as exc:
            log.debug("terminate %d failed: %s", pid, exc)
            return False
        return True
