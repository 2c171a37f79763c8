"""Live state: the single owned aggregate behind the dashboard."""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from dashtop.config import Config
from dashtop.containers import ContainerAttributor, ContainerKey, ContainerRow
from dashtop.gpu.monitor import GpuMonitor, SnapshotChannel
from dashtop.gpu.registry import default_gpu_index
from dashtop.gpu.types import GpuInfo, GpuProcessUsage, GpuSnapshot
from dashtop.inventory import HostInventory, PsutilInventory
from dashtop.models import HostTotals, ProcessInfo, ProcessRow, SortDir, SortKey
from dashtop.status import StatusLevel, StatusMessage
from dashtop.table import ProcessTableBuilder, arrange_rows

log = logging.getLogger(__name__)


class ViewMode(Enum):
    OVERVIEW = "Overview"
    PROCESSES = "Processes"
    GPU_FOCUS = "GPU"
    SYSTEM_INFO = "System"
    CONTAINERS = "Containers"

    @property
    def label(self) -> str:
        return self.value

    def next(self) -> "ViewMode":
        modes = list(ViewMode)
        return modes[(modes.index(self) + 1) % len(modes)]

    @property
    def shows_processes(self) -> bool:
        return self in (ViewMode.OVERVIEW, ViewMode.PROCESSES)


class HighlightMode(Enum):
    CURRENT_USER = "user"
    NON_ROOT = "non-root"
    GUI = "gui"

    def cycle(self) -> "HighlightMode":
        modes = list(HighlightMode)
        return modes[(modes.index(self) + 1) % len(modes)]

    def matches(self, row: ProcessRow) -> bool:
        if self is HighlightMode.CURRENT_USER:
            return row.is_current_user
        if self is HighlightMode.NON_ROOT:
            return row.is_non_root
        return row.is_gui


class GpuProcessSortKey(Enum):
    PID = "pid"
    KIND = "kind"
    SM = "sm"
    MEM = "mem"
    ENC = "enc"
    DEC = "dec"
    VRAM = "vram"
    NAME = "name"

    @property
    def default_dir(self) -> SortDir:
        if self in (GpuProcessSortKey.PID, GpuProcessSortKey.KIND, GpuProcessSortKey.NAME):
            return SortDir.ASC
        return SortDir.DESC

    def next(self) -> "GpuProcessSortKey":
        keys = list(GpuProcessSortKey)
        return keys[(keys.index(self) + 1) % len(keys)]

    def prev(self) -> "GpuProcessSortKey":
        keys = list(GpuProcessSortKey)
        return keys[(keys.index(self) - 1) % len(keys)]


@dataclass(slots=True, frozen=True)
class ConfirmKill:
    """Identifying fields captured when a termination is requested."""

    pid: int
    name: str
    cpu_percent: float
    memory_bytes: int
    status: str
    start_time: float


def _clamped_move(current: int, delta: int, length: int) -> int:
    return min(max(current + delta, 0), length - 1)


def _scroll_to(selected: int | None, scroll: int, max_rows: int, length: int) -> int:
    if max_rows <= 0:
        return scroll
    if selected is not None:
        if selected < scroll:
            scroll = selected
        elif selected >= scroll + max_rows:
            scroll = selected + 1 - max_rows
    return min(scroll, max(length - max_rows, 0))


class LiveState:
    """
    Current snapshot of processes, GPUs and containers plus the view cursors.

    Owned and mutated by one event loop. ``refresh()`` pulls a new host
    sample; ``tick()`` applies the newest GPU snapshot from the background
    monitor and expires the status message. Row collections are replaced
    wholesale; cursors follow identities (pid, container key, gpu id).
    """

    def __init__(
        self,
        config: Config | None = None,
        inventory: HostInventory | None = None,
        attributor: ContainerAttributor | None = None,
        channel: SnapshotChannel[GpuSnapshot] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Build the state and take the first sample.

        Args:
            config: Settings; defaults to ``Config()``.
            inventory: Host process source; defaults to psutil.
            attributor: Container attribution; defaults to reading /proc.
            channel: GPU snapshot channel. When omitted and GPUs are enabled,
                a background ``GpuMonitor`` is started feeding a new channel.
            clock: Monotonic clock used for status expiry.
        """
        self.config = config or Config()
        self._inventory = inventory or PsutilInventory()
        self._attributor = attributor or ContainerAttributor()
        self._clock = clock
        self._builder = ProcessTableBuilder(self._inventory.environ)

        self._channel = channel
        self._monitor: GpuMonitor | None = None
        if self._channel is None and self.config.gpu_enabled:
            self._channel = SnapshotChannel()
            self._monitor = GpuMonitor(self._channel, interval=self.config.gpu_poll_rate)
            self._monitor.start()

        self.current_uid = self._inventory.current_uid()
        self.totals: HostTotals | None = None
        self._processes: list[ProcessInfo] = []

        self.sort_key = self.config.sort_key
        self.sort_dir = self.config.sort_dir
        self.tree_view = False
        self.process_filter = ""
        self.rows: list[ProcessRow] = []
        self.tree_labels: dict[int, str] = {}
        self.selected_index: int | None = None
        self.selected_pid: int | None = None
        self.scroll = 0

        self.view_mode = ViewMode.OVERVIEW
        self.highlight_mode = HighlightMode.CURRENT_USER

        self.gpu_preference = self.config.gpu_preference
        self.gpu_list: list[GpuInfo] = []
        self.gpu_selected: str | None = None
        self.gpu_processes: list[GpuProcessUsage] = []
        self.gpu_process_sort_key = GpuProcessSortKey.SM
        self.gpu_process_sort_dir = GpuProcessSortKey.SM.default_dir
        self.gpu_process_scroll = 0

        self.container_rows: list[ContainerRow] = []
        self.container_pid_map: dict[int, ContainerKey] = {}
        self.container_index: int | None = None
        self.container_selected: ContainerKey | None = None
        self.container_scroll = 0
        self.container_filter: ContainerKey | None = None

        self.confirm: ConfirmKill | None = None
        self.status: StatusMessage | None = None

        self.refresh()
        self.tick()

    # Sampling

    @property
    def needs_containers(self) -> bool:
        return self.view_mode is ViewMode.CONTAINERS or self.container_filter is not None

    def refresh(self) -> None:
        """Pull a new host sample and rebuild every row collection."""
        self._inventory.refresh()
        self._processes = self._inventory.processes()
        self.totals = self._inventory.totals()
        if self.needs_containers:
            self._update_containers()
        self._update_rows()

    def tick(self) -> None:
        """Apply the newest pending GPU snapshot and expire the status line."""
        if self._channel is not None:
            snapshot = self._channel.drain()
            if snapshot is not None:
                self.apply_gpu_snapshot(snapshot)
        if self.status is not None and self.status.is_expired(self._clock()):
            self.status = None

    def close(self) -> None:
        """Stop background sampling."""
        if self._channel is not None:
            self._channel.close()
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None

    def set_status(self, level: StatusLevel, text: str) -> None:
        self.status = StatusMessage.create(level, text, self._clock())

    # Process rows

    def _update_rows(self) -> None:
        rows = self._builder.build_rows(self._processes, self.gpu_processes, self.current_uid)
        if self.container_filter is not None:
            rows = [
                row for row in rows if self.container_pid_map.get(row.pid) == self.container_filter
            ]
        kept = {row.pid for row in rows}
        # Parents outside the kept set make their children roots
        parents = {proc.pid: proc.ppid for proc in self._processes if proc.pid in kept}
        self.rows, self.tree_labels = arrange_rows(
            rows,
            parents,
            self.tree_view,
            self.sort_key,
            self.sort_dir,
            self.process_filter,
        )
        self._sync_selection()

    def _sync_selection(self) -> None:
        if not self.rows:
            self.selected_index = None
            self.selected_pid = None
            self.scroll = 0
            return

        index = None
        if self.selected_pid is not None:
            index = next(
                (i for i, row in enumerate(self.rows) if row.pid == self.selected_pid), None
            )
        if index is None:
            index = min(self.selected_index or 0, len(self.rows) - 1)
        self.selected_index = index
        self.selected_pid = self.rows[index].pid

    def selected_row(self) -> ProcessRow | None:
        if self.selected_index is None or self.selected_index >= len(self.rows):
            return None
        return self.rows[self.selected_index]

    def move_selection(self, delta: int) -> None:
        if not self.rows:
            self.selected_index = None
            self.selected_pid = None
            return
        index = _clamped_move(self.selected_index or 0, delta, len(self.rows))
        self.selected_index = index
        self.selected_pid = self.rows[index].pid

    def select_process_row(self, index: int) -> None:
        if not self.rows:
            self.selected_index = None
            self.selected_pid = None
            return
        index = min(max(index, 0), len(self.rows) - 1)
        self.selected_index = index
        self.selected_pid = self.rows[index].pid

    def select_process_pid(self, pid: int) -> None:
        self.selected_pid = pid
        for index, row in enumerate(self.rows):
            if row.pid == pid:
                self.selected_index = index
                return

    def ensure_visible(self, max_rows: int) -> None:
        self.scroll = _scroll_to(self.selected_index, self.scroll, max_rows, len(self.rows))

    def set_sort_key(self, key: SortKey) -> None:
        """Switch the sort key and reset to its natural direction. Tree view only allows pid."""
        if self.tree_view and key is not SortKey.PID:
            return
        self.sort_key = key
        self.sort_dir = key.default_dir
        self._update_rows()

    def toggle_sort_dir(self) -> None:
        if self.tree_view:
            return
        self.sort_dir = self.sort_dir.toggle()
        self._update_rows()

    def toggle_tree_view(self) -> None:
        if not self.view_mode.shows_processes:
            return
        self.tree_view = not self.tree_view
        if self.tree_view:
            self.sort_key = SortKey.PID
            self.sort_dir = SortDir.ASC
        self._update_rows()

    def set_process_filter(self, text: str) -> None:
        self.process_filter = text
        self._update_rows()

    def cycle_highlight_mode(self) -> None:
        self.highlight_mode = self.highlight_mode.cycle()

    # Views

    def set_view_mode(self, mode: ViewMode) -> None:
        changed = False
        if not mode.shows_processes:
            changed = self.container_filter is not None or self.tree_view
            self.container_filter = None
            self.tree_view = False
        self.view_mode = mode
        if changed:
            self._update_rows()

    def cycle_view_mode(self) -> None:
        self.set_view_mode(self.view_mode.next())

    # GPUs

    def apply_gpu_snapshot(self, snapshot: GpuSnapshot) -> None:
        self.gpu_list = sorted(snapshot.gpus, key=lambda gpu: gpu.kind.sort_rank)
        self.gpu_processes = list(snapshot.processes)
        self._sync_gpu_selection()

    def _sync_gpu_selection(self) -> None:
        if not self.gpu_list:
            self.gpu_selected = None
            return
        if any(gpu.id == self.gpu_selected for gpu in self.gpu_list):
            return
        index = default_gpu_index(self.gpu_list, self.gpu_preference)
        self.gpu_selected = self.gpu_list[index].id if index is not None else None

    def _selected_gpu_index(self) -> int | None:
        for index, gpu in enumerate(self.gpu_list):
            if gpu.id == self.gpu_selected:
                return index
        return None

    def selected_gpu(self) -> GpuInfo | None:
        index = self._selected_gpu_index()
        return self.gpu_list[index] if index is not None else None

    def select_next_gpu(self) -> None:
        if not self.gpu_list:
            return
        current = self._selected_gpu_index() or 0
        self.gpu_selected = self.gpu_list[(current + 1) % len(self.gpu_list)].id

    def select_prev_gpu(self) -> None:
        if not self.gpu_list:
            return
        current = self._selected_gpu_index() or 0
        self.gpu_selected = self.gpu_list[(current - 1) % len(self.gpu_list)].id

    def set_gpu_process_sort_key(self, key: GpuProcessSortKey) -> None:
        self.gpu_process_sort_key = key
        self.gpu_process_sort_dir = key.default_dir

    def toggle_gpu_process_sort_dir(self) -> None:
        self.gpu_process_sort_dir = self.gpu_process_sort_dir.toggle()

    def gpu_process_entries(self) -> list[GpuProcessUsage]:
        """Per-process usage on the selected GPU, in the GPU view's sort order."""
        gpu = self.selected_gpu()
        if gpu is None:
            return []
        names = {proc.pid: proc.name for proc in self._processes}
        key = self.gpu_process_sort_key

        def value(entry: GpuProcessUsage):
            if key is GpuProcessSortKey.PID:
                return entry.pid
            if key is GpuProcessSortKey.KIND:
                return entry.kind or ""
            if key is GpuProcessSortKey.NAME:
                return names.get(entry.pid, "")
            metric = {
                GpuProcessSortKey.SM: entry.sm_pct,
                GpuProcessSortKey.MEM: entry.mem_pct,
                GpuProcessSortKey.ENC: entry.enc_pct,
                GpuProcessSortKey.DEC: entry.dec_pct,
                GpuProcessSortKey.VRAM: entry.fb_mb,
            }[key]
            return -1.0 if metric is None else metric

        entries = sorted(
            (entry for entry in self.gpu_processes if entry.gpu_id == gpu.id),
            key=lambda entry: entry.pid,
        )
        return sorted(entries, key=value, reverse=self.gpu_process_sort_dir is SortDir.DESC)

    def gpu_process_order(self) -> list[int]:
        return [entry.pid for entry in self.gpu_process_entries()]

    def selected_gpu_process_pid(self) -> int | None:
        gpu = self.selected_gpu()
        if self.selected_pid is None or gpu is None:
            return None
        uses_gpu = any(
            entry.pid == self.selected_pid and entry.gpu_id == gpu.id
            for entry in self.gpu_processes
        )
        return self.selected_pid if uses_gpu else None

    def move_gpu_process_selection(self, delta: int, max_rows: int = 0) -> None:
        order = self.gpu_process_order()
        if not order:
            return
        current = order.index(self.selected_pid) if self.selected_pid in order else 0
        self.selected_pid = order[_clamped_move(current, delta, len(order))]
        self.ensure_gpu_process_visible(max_rows)

    def ensure_gpu_process_visible(self, max_rows: int) -> None:
        order = self.gpu_process_order()
        if not order:
            self.gpu_process_scroll = 0
            return
        selected = order.index(self.selected_pid) if self.selected_pid in order else None
        self.gpu_process_scroll = _scroll_to(selected, self.gpu_process_scroll, max_rows, len(order))

    # Containers

    def _update_containers(self) -> None:
        self.container_rows, self.container_pid_map = self._attributor.update(self._processes)
        self._sync_container_selection()

    def _sync_container_selection(self) -> None:
        if not self.container_rows:
            self.container_index = None
            self.container_selected = None
            self.container_scroll = 0
            return

        index = None
        if self.container_selected is not None:
            index = next(
                (
                    i
                    for i, row in enumerate(self.container_rows)
                    if row.key == self.container_selected
                ),
                None,
            )
        if index is None:
            index = min(self.container_index or 0, len(self.container_rows) - 1)
        self.container_index = index
        self.container_selected = self.container_rows[index].key

    def selected_container(self) -> ContainerRow | None:
        if self.container_index is None or self.container_index >= len(self.container_rows):
            return None
        return self.container_rows[self.container_index]

    def move_container_selection(self, delta: int) -> None:
        if not self.container_rows:
            self.container_index = None
            self.container_selected = None
            return
        index = _clamped_move(self.container_index or 0, delta, len(self.container_rows))
        self.container_index = index
        self.container_selected = self.container_rows[index].key

    def ensure_container_visible(self, max_rows: int) -> None:
        self.container_scroll = _scroll_to(
            self.container_index, self.container_scroll, max_rows, len(self.container_rows)
        )

    def enter_container(self) -> None:
        """Restrict the process table to the selected container's members."""
        row = self.selected_container()
        if row is None:
            return
        self.container_filter = row.key
        self.set_view_mode(ViewMode.PROCESSES)
        self.refresh()

    def exit_container_drill(self) -> None:
        if self.container_filter is None:
            return
        self.container_filter = None
        self.set_view_mode(ViewMode.CONTAINERS)
        self.refresh()

    # Termination

    def open_confirm(self, pid: int | None = None) -> None:
        """
        Capture the identity of a process that is about to be terminated.

        Without a pid the selected row is used. A pid absent from the current
        rows is looked up directly in the inventory.
        """
        if pid is None:
            row = self.selected_row()
            if row is None:
                return
            pid = row.pid

        for row in self.rows:
            if row.pid == pid:
                self.confirm = ConfirmKill(
                    pid=row.pid,
                    name=row.name,
                    cpu_percent=row.cpu_percent,
                    memory_bytes=row.memory_bytes,
                    status=row.status,
                    start_time=row.start_time,
                )
                return

        proc = self._inventory.process(pid)
        if proc is None:
            self.set_status(StatusLevel.WARN, f"Process PID {pid} not found")
            return
        self.confirm = ConfirmKill(
            pid=proc.pid,
            name=proc.name,
            cpu_percent=proc.cpu_percent,
            memory_bytes=proc.memory_bytes,
            status=proc.status,
            start_time=proc.start_time,
        )

    def cancel_confirm(self) -> None:
        self.confirm = None

    def confirm_kill(self) -> None:
        """
        Send SIGTERM to the pending process if it is still the same one.

        The live process is re-read; a different start time means the pid was
        recycled and nothing is sent. Always refreshes afterwards.
        """
        confirm = self.confirm
        if confirm is None:
            return
        self.confirm = None

        proc = self._inventory.process(confirm.pid)
        if proc is None:
            self.set_status(StatusLevel.WARN, f"Process PID {confirm.pid} not found")
        elif proc.start_time != confirm.start_time:
            log.debug(
                "pid %d start time changed %s -> %s",
                confirm.pid,
                confirm.start_time,
                proc.start_time,
            )
            self.set_status(StatusLevel.WARN, f"PID {confirm.pid} reused; refusing SIGTERM")
        else:
            sent = self._inventory.terminate(confirm.pid)
            if sent is True:
                self.set_status(StatusLevel.INFO, f"Sent SIGTERM to PID {confirm.pid}")
            elif sent is False:
                self.set_status(StatusLevel.WARN, f"Failed to send SIGTERM to PID {confirm.pid}")
            else:
                self.set_status(StatusLevel.WARN, f"SIGTERM not supported for PID {confirm.pid}")

        self.refresh()
