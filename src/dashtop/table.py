"""Process table construction: rows, flat sorting and tree layout."""

import logging
from dataclasses import dataclass, field
from typing import Callable

from dashtop.gpu.types import GpuProcessUsage, max_optional, merge_kind
from dashtop.models import ProcessInfo, ProcessRow, SortDir, SortKey

log = logging.getLogger(__name__)

GUI_ENV_VARS = ("DISPLAY", "WAYLAND_DISPLAY", "MIR_SOCKET")
MIB = 1024 * 1024

BRANCH = "├─ "
LAST_BRANCH = "└─ "
PIPE = "│  "
BLANK = "   "


@dataclass(slots=True)
class ProcessGpuUsage:
    """GPU usage of one pid summed over every GPU context it holds."""

    sm_pct: float | None = None
    mem_pct: float | None = None
    enc_pct: float | None = None
    dec_pct: float | None = None
    fb_bytes: int = 0
    kind: str | None = None

    def add(self, usage: GpuProcessUsage) -> None:
        # Percentages take the max; frame-buffer sizes add up
        self.sm_pct = max_optional(self.sm_pct, usage.sm_pct)
        self.mem_pct = max_optional(self.mem_pct, usage.mem_pct)
        self.enc_pct = max_optional(self.enc_pct, usage.enc_pct)
        self.dec_pct = max_optional(self.dec_pct, usage.dec_pct)
        if usage.fb_mb is not None:
            self.fb_bytes += usage.fb_mb * MIB
        self.kind = merge_kind(self.kind, usage.kind)


def aggregate_gpu_usage(usages: list[GpuProcessUsage]) -> dict[int, ProcessGpuUsage]:
    by_pid: dict[int, ProcessGpuUsage] = {}
    for usage in usages:
        by_pid.setdefault(usage.pid, ProcessGpuUsage()).add(usage)
    return by_pid


def is_gui_environment(environ: dict[str, str]) -> bool:
    return any(name in environ for name in GUI_ENV_VARS)


class ProcessTableBuilder:
    """
    Joins inventory processes with GPU usage into ``ProcessRow`` objects.

    The GUI flag needs an environment read per process, so it is memoized
    per pid; the memo is pruned to the live pid set on every build.
    """

    def __init__(self, environ: Callable[[int], dict[str, str]]) -> None:
        self._environ = environ
        self._gui_cache: dict[int, bool] = {}

    @property
    def gui_cache(self) -> dict[int, bool]:
        return dict(self._gui_cache)

    def _is_gui(self, pid: int) -> bool:
        cached = self._gui_cache.get(pid)
        if cached is None:
            cached = is_gui_environment(self._environ(pid))
            self._gui_cache[pid] = cached
        return cached

    def build_rows(
        self,
        processes: list[ProcessInfo],
        gpu_processes: list[GpuProcessUsage],
        current_uid: int | None,
    ) -> list[ProcessRow]:
        gpu_usage = aggregate_gpu_usage(gpu_processes)
        rows: list[ProcessRow] = []

        for proc in processes:
            usage = gpu_usage.get(proc.pid)
            rows.append(
                ProcessRow(
                    pid=proc.pid,
                    user=proc.user,
                    name=proc.name,
                    cpu_percent=proc.cpu_percent,
                    memory_bytes=proc.memory_bytes,
                    status=proc.status,
                    start_time=proc.start_time,
                    uptime_seconds=proc.uptime_seconds,
                    is_current_user=(
                        current_uid is not None and proc.uid is not None and proc.uid == current_uid
                    ),
                    is_non_root=proc.uid is not None and proc.uid != 0,
                    is_gui=self._is_gui(proc.pid),
                    gpu_sm_pct=usage.sm_pct if usage else None,
                    gpu_mem_pct=usage.mem_pct if usage else None,
                    gpu_enc_pct=usage.enc_pct if usage else None,
                    gpu_dec_pct=usage.dec_pct if usage else None,
                    gpu_fb_bytes=usage.fb_bytes if usage and usage.fb_bytes > 0 else None,
                    gpu_kind=usage.kind if usage else None,
                )
            )

        live = {proc.pid for proc in processes}
        for pid in [pid for pid in self._gui_cache if pid not in live]:
            del self._gui_cache[pid]

        return rows


def _sort_value(row: ProcessRow, key: SortKey):
    if key is SortKey.PID:
        return row.pid
    if key is SortKey.USER:
        # Rows without a user go after named ones when ascending
        return (row.user is None, row.user or "")
    if key is SortKey.CPU:
        return row.cpu_percent
    if key is SortKey.MEM:
        return row.memory_bytes
    if key is SortKey.UPTIME:
        return row.uptime_seconds
    if key is SortKey.STATUS:
        return row.status
    return row.name


def sort_process_rows(rows: list[ProcessRow], key: SortKey, direction: SortDir) -> list[ProcessRow]:
    """
    Stable sort by ``key`` in ``direction`` with ascending pid as tiebreak.

    Python's sort stays stable with ``reverse=True``, so sorting by pid first
    keeps equal keys in pid order in both directions.
    """
    by_pid = sorted(rows, key=lambda row: row.pid)
    return sorted(
        by_pid,
        key=lambda row: _sort_value(row, key),
        reverse=direction is SortDir.DESC,
    )


@dataclass(slots=True)
class TreeLayout:
    order: list[int] = field(default_factory=list)
    labels: dict[int, str] = field(default_factory=dict)


def build_tree_layout(parents: dict[int, int | None], rows: dict[int, ProcessRow]) -> TreeLayout:
    """
    Depth-first parent/child layout with box-drawing labels.

    A parent pid missing from ``parents`` makes the process a root. Children
    are ordered by name then pid, roots by pid. A visited set guards against
    cyclic parent data; pids it leaves unreached are absent from ``order``.
    """
    children: dict[int, list[int]] = {}
    roots: list[int] = []
    for pid, parent in parents.items():
        if parent is not None and parent in parents and parent != pid:
            children.setdefault(parent, []).append(pid)
        else:
            roots.append(pid)

    def child_key(pid: int):
        row = rows.get(pid)
        return (row.name if row else "", pid)

    for siblings in children.values():
        siblings.sort(key=child_key)
    roots.sort()

    layout = TreeLayout()
    visited: set[int] = set()
    # Explicit stack: deep process chains must not hit the recursion limit
    stack: list[tuple[int, str, bool, bool]] = [
        (root, "", index == len(roots) - 1, True) for index, root in enumerate(roots)
    ]
    stack.reverse()

    while stack:
        pid, prefix, is_last, is_root = stack.pop()
        if pid in visited:
            continue
        visited.add(pid)
        row = rows.get(pid)
        if row is None:
            continue

        if is_root:
            connector = ""
            child_prefix = ""
        else:
            connector = LAST_BRANCH if is_last else BRANCH
            child_prefix = prefix + (BLANK if is_last else PIPE)
        layout.labels[pid] = f"{prefix}{connector}{row.name}"
        layout.order.append(pid)

        siblings = children.get(pid, [])
        for index in range(len(siblings) - 1, -1, -1):
            stack.append((siblings[index], child_prefix, index == len(siblings) - 1, False))

    return layout


def arrange_rows(
    rows: list[ProcessRow],
    parents: dict[int, int | None],
    tree: bool,
    key: SortKey,
    direction: SortDir,
    name_filter: str = "",
) -> tuple[list[ProcessRow], dict[int, str]]:
    """
    Order rows for display, flat or as a tree, then apply the name filter.

    Returns the rows and the tree labels (empty in flat mode). Rows the tree
    walk cannot reach are appended in pid order.
    """
    labels: dict[int, str] = {}
    if tree:
        by_pid = {row.pid: row for row in rows}
        layout = build_tree_layout(parents, by_pid)
        ordered = [by_pid.pop(pid) for pid in layout.order if pid in by_pid]
        if by_pid:
            log.debug("tree layout left %d unreachable rows", len(by_pid))
            ordered.extend(sorted(by_pid.values(), key=lambda row: row.pid))
        labels = layout.labels
    else:
        ordered = sort_process_rows(rows, key, direction)

    needle = name_filter.strip().lower()
    if needle:
        ordered = [row for row in ordered if needle in row.name.lower()]
    return ordered, labels
