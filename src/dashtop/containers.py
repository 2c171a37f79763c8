"""Container attribution from control groups, with per-namespace network rates."""

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from dashtop.models import ProcessInfo

log = logging.getLogger(__name__)

PROC_ROOT = Path("/proc")

SCOPE_SUFFIXES = (".scope", ".slice", ".service")
SCOPE_PREFIXES = ("docker-", "libpod-", "podman-", "crio-", "cri-containerd-", "containerd-")
RUNTIME_DIRS = ("docker", "libpod", "podman", "crio", "containerd")
SHORT_ID_LEN = 12


class ContainerRuntime(Enum):
    DOCKER = "docker"
    PODMAN = "podman"
    CONTAINERD = "containerd"
    CRIO = "crio"
    KUBERNETES = "k8s"

    @property
    def label(self) -> str:
        return self.value


@dataclass(slots=True, frozen=True)
class ContainerKey:
    runtime: ContainerRuntime
    id: str

    @property
    def label(self) -> str:
        return f"{self.runtime.label}:{self.id[:SHORT_ID_LEN]}"


@dataclass(slots=True, frozen=True)
class ContainerRow:
    """Aggregated usage of every process attributed to one container."""

    key: ContainerKey
    cpu_percent: float
    memory_bytes: int
    process_count: int
    net_bytes_per_sec: int | None = None

    @property
    def label(self) -> str:
        return self.key.label


@dataclass(slots=True, frozen=True)
class NetSample:
    rx_bytes: int = 0
    tx_bytes: int = 0


def detect_runtime(path: str) -> ContainerRuntime | None:
    if "kubepods" in path:
        return ContainerRuntime.KUBERNETES
    if "libpod" in path or "podman" in path:
        return ContainerRuntime.PODMAN
    if "docker" in path:
        return ContainerRuntime.DOCKER
    if "crio" in path:
        return ContainerRuntime.CRIO
    if "containerd" in path:
        return ContainerRuntime.CONTAINERD
    return None


def trim_suffixes(value: str) -> str:
    for suffix in SCOPE_SUFFIXES:
        if value.endswith(suffix):
            return value.removesuffix(suffix)
    return value


def _runtime_id(segments: list[str]) -> str | None:
    for index, segment in enumerate(segments):
        for prefix in SCOPE_PREFIXES:
            if segment.startswith(prefix):
                rest = trim_suffixes(segment.removeprefix(prefix))
                if rest:
                    return rest
        if segment in RUNTIME_DIRS and index + 1 < len(segments):
            following = trim_suffixes(segments[index + 1])
            if following:
                return following
    return None


def _hex_id(segment: str) -> str | None:
    trimmed = trim_suffixes(segment)
    if len(trimmed) >= 8 and all(ch in "0123456789abcdefABCDEF" for ch in trimmed):
        return trimmed
    return None


def _pod_id(segment: str) -> str | None:
    trimmed = trim_suffixes(segment)
    index = trimmed.rfind("pod")
    if index < 0:
        return None
    rest = trimmed[index + 3 :].lstrip("_")
    # "kubepods" itself is a marker, not a pod; uids start with a hex digit
    if not rest or rest[0] not in "0123456789abcdefABCDEF":
        return None
    return f"pod{rest}"


def parse_cgroup_path(path: str) -> ContainerKey | None:
    """
    Derive a container identity from one cgroup path.

    Tries, in order: a runtime scope segment (``docker-<id>.scope``) or a
    runtime directory followed by the id, then any segment of 8+ hex digits,
    then (Kubernetes only) a pod segment.
    """
    if not path:
        return None
    runtime = detect_runtime(path)
    if runtime is None:
        return None

    segments = [segment for segment in path.split("/") if segment]
    container_id = _runtime_id(segments)
    if container_id is None:
        container_id = next(filter(None, map(_hex_id, segments)), None)
    if container_id is None and runtime is ContainerRuntime.KUBERNETES:
        container_id = next(filter(None, map(_pod_id, segments)), None)
    if container_id is None:
        return None
    return ContainerKey(runtime=runtime, id=container_id)


def parse_cgroup(contents: str) -> ContainerKey | None:
    """First match over the ``hierarchy:controllers:path`` lines of a cgroup file."""
    for line in contents.splitlines():
        parts = line.split(":", 2)
        if len(parts) < 3:
            continue
        key = parse_cgroup_path(parts[2].strip())
        if key is not None:
            return key
    return None


def parse_netns_target(value: str) -> int | None:
    """Inode number from a namespace link target such as ``net:[4026531993]``."""
    start = value.find("[")
    if start < 0:
        return None
    end = value.find("]", start + 1)
    if end < 0:
        return None
    try:
        return int(value[start + 1 : end])
    except ValueError:
        return None


def parse_net_dev(contents: str) -> NetSample | None:
    """Sum receive and transmit bytes over every interface in a net/dev table."""
    rx_total = 0
    tx_total = 0
    found = False
    for line in contents.splitlines()[2:]:
        iface, sep, rest = line.strip().partition(":")
        if not sep or not iface.strip():
            continue
        columns = rest.split()
        if len(columns) < 9:
            continue
        try:
            rx_bytes = int(columns[0])
            tx_bytes = int(columns[8])
        except ValueError:
            continue
        rx_total += rx_bytes
        tx_total += tx_bytes
        found = True
    return NetSample(rx_bytes=rx_total, tx_bytes=tx_total) if found else None


def container_key_for_pid(pid: int, proc_root: Path = PROC_ROOT) -> ContainerKey | None:
    try:
        contents = (proc_root / str(pid) / "cgroup").read_text()
    except (OSError, UnicodeDecodeError):
        return None
    return parse_cgroup(contents)


def netns_id_for_pid(pid: int, proc_root: Path = PROC_ROOT) -> int | None:
    try:
        target = os.readlink(proc_root / str(pid) / "ns" / "net")
    except OSError:
        return None
    return parse_netns_target(target)


def net_sample_for_pid(pid: int, proc_root: Path = PROC_ROOT) -> NetSample | None:
    try:
        contents = (proc_root / str(pid) / "net" / "dev").read_text()
    except (OSError, UnicodeDecodeError):
        return None
    return parse_net_dev(contents)


def rate_between(current: NetSample, previous: NetSample, elapsed: float) -> int | None:
    if elapsed <= 0:
        return None
    rx_delta = max(current.rx_bytes - previous.rx_bytes, 0)
    tx_delta = max(current.tx_bytes - previous.tx_bytes, 0)
    return round(rx_delta / elapsed) + round(tx_delta / elapsed)


@dataclass(slots=True)
class _Usage:
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    process_count: int = 0
    netns_id: int | None = None


class ContainerAttributor:
    """
    Maps processes to containers and aggregates their usage.

    The only state kept between calls is one network sample per namespace,
    used for the rate delta; namespaces not seen in a cycle are forgotten.
    """

    def __init__(
        self,
        proc_root: Path = PROC_ROOT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._proc_root = proc_root
        self._clock = clock
        self._net_prev: dict[int, tuple[NetSample, float]] = {}

    def update(
        self, processes: list[ProcessInfo]
    ) -> tuple[list[ContainerRow], dict[int, ContainerKey]]:
        """
        Attribute every process and rebuild the container rows.

        Returns the rows (cpu desc, memory desc, label asc) and the
        pid -> container key map used for drill-down filtering.
        """
        usage: dict[ContainerKey, _Usage] = {}
        pid_map: dict[int, ContainerKey] = {}
        netns_pids: dict[int, int] = {}
        netns_owners: dict[int, int] = {}

        for proc in processes:
            key = container_key_for_pid(proc.pid, self._proc_root)
            if key is None:
                continue
            pid_map[proc.pid] = key
            entry = usage.setdefault(key, _Usage())
            entry.cpu_percent += proc.cpu_percent
            entry.memory_bytes += proc.memory_bytes
            entry.process_count += 1
            if entry.netns_id is None:
                netns_id = netns_id_for_pid(proc.pid, self._proc_root)
                if netns_id is not None:
                    entry.netns_id = netns_id
                    netns_pids.setdefault(netns_id, proc.pid)
                    netns_owners[netns_id] = netns_owners.get(netns_id, 0) + 1

        rates = self._sample_rates(netns_pids)

        rows = []
        for key, entry in usage.items():
            rate = None
            if entry.netns_id is not None and netns_owners.get(entry.netns_id, 0) == 1:
                rate = rates.get(entry.netns_id)
            rows.append(
                ContainerRow(
                    key=key,
                    cpu_percent=entry.cpu_percent,
                    memory_bytes=entry.memory_bytes,
                    process_count=entry.process_count,
                    net_bytes_per_sec=rate,
                )
            )
        rows.sort(key=lambda row: (-row.cpu_percent, -row.memory_bytes, row.label))
        return rows, pid_map

    def _sample_rates(self, netns_pids: dict[int, int]) -> dict[int, int]:
        now = self._clock()
        rates: dict[int, int] = {}
        next_prev: dict[int, tuple[NetSample, float]] = {}
        for netns_id, pid in netns_pids.items():
            sample = net_sample_for_pid(pid, self._proc_root)
            if sample is None:
                log.debug("no net counters for netns %d (pid %d)", netns_id, pid)
                continue
            previous = self._net_prev.get(netns_id)
            if previous is not None:
                rate = rate_between(sample, previous[0], now - previous[1])
                if rate is not None:
                    rates[netns_id] = rate
            next_prev[netns_id] = (sample, now)
        self._net_prev = next_prev
        return rates
