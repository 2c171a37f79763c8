"""dashtop - Textual presentation shell around the live state."""

from rich.markup import escape
from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Horizontal
from textual.widgets import DataTable, Footer, Static

from dashtop.config import Config
from dashtop.gpu.types import GpuInfo
from dashtop.inventory import HostInventory
from dashtop.models import HostTotals
from dashtop.state import LiveState, ViewMode
from dashtop.status import StatusLevel

TICK_INTERVAL = 0.25


def format_bytes(size: int) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{size:5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_uptime(seconds: float) -> str:
    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    if days > 0:
        return f"{days} days, {hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_pct(value: float | None) -> str:
    return "-" if value is None else f"{value:5.1f}"


def host_summary(totals: HostTotals | None) -> str:
    if totals is None or totals.memory_total == 0:
        return "Loading memory info..."
    load = totals.load_avg
    return (
        f"Mem {totals.memory_used / 1024**3:.1f}G/{totals.memory_total / 1024**3:.1f}G  "
        f"Swp {totals.swap_used / 1024**3:.1f}G/{totals.swap_total / 1024**3:.1f}G\n"
        f"Load average: {load[0]:.2f} {load[1]:.2f} {load[2]:.2f}\n"
        f"Uptime: {format_uptime(totals.uptime_seconds)}"
    )


def gpu_summary(gpu: GpuInfo | None, count: int) -> str:
    if gpu is None:
        return "GPU: none detected"
    lines = [f"GPU {escape(gpu.name)} ({gpu.kind.value}, {count} total)"]
    if gpu.memory is not None:
        lines.append(
            f"VRAM {format_bytes(gpu.memory.used_bytes)}/{format_bytes(gpu.memory.total_bytes)}"
        )
    util = gpu.telemetry.utilization_gpu_pct
    temp = gpu.telemetry.temperature_c
    lines.append(f"Util {format_pct(util)}%  Temp {'-' if temp is None else f'{temp:.0f}C'}")
    return "\n".join(lines)


class HeaderStats(Horizontal):
    """Header widget showing host totals and the selected GPU."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 4;
        padding: 0 1;
        background: $surface;
    }

    #host-info {
        width: 1fr;
    }

    #gpu-info {
        width: 1fr;
    }
    """

    def compose(self) -> ComposeResult:
        """Compose the header stats layout."""
        yield Static(host_summary(None), id="host-info")
        yield Static(gpu_summary(None, 0), id="gpu-info")

    def update_stats(self, state: LiveState) -> None:
        self.query_one("#host-info", Static).update(host_summary(state.totals))
        self.query_one("#gpu-info", Static).update(
            gpu_summary(state.selected_gpu(), len(state.gpu_list))
        )


class DashtopApp(App):
    """Main dashtop application."""

    TITLE = "dashtop"
    SUB_TITLE = "Processes, GPUs and containers"

    CSS = """
    Screen {
        layout: vertical;
    }

    #main-table {
        height: 1fr;
        border: solid $primary;
    }

    #status-line {
        height: 1;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("up", "move(-1)", "Up"),
        ("down", "move(1)", "Down"),
        ("f6", "sort", "Sort"),
        ("i", "invert", "Invert"),
        ("t", "tree", "Tree"),
        ("v", "view", "View"),
        ("h", "highlight", "Highlight"),
        ("g", "next_gpu", "GPU"),
        ("k", "kill", "Kill"),
        ("y", "confirm", "Confirm"),
        ("n", "cancel", "Cancel"),
        ("enter", "enter_container", "Enter"),
        ("escape", "leave_container", "Back"),
    ]

    def __init__(self, config: Config | None = None, inventory: HostInventory | None = None) -> None:
        """Initialize the DashtopApp."""
        super().__init__()
        self.config = config or Config()
        self._inventory = inventory
        self.state: LiveState | None = None
        self._columns_for: ViewMode | None = None

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield HeaderStats(id="header-stats")
        yield DataTable(id="main-table", cursor_type="row")
        yield Static("", id="status-line")
        yield Footer()

    def on_mount(self) -> None:
        """Build the live state and start the refresh timers."""
        self.state = LiveState(self.config, inventory=self._inventory)
        # Arrow keys drive the live state cursor, not the widget
        self.query_one("#main-table", DataTable).can_focus = False
        self.set_interval(self.config.tick_rate, self._refresh)
        self.set_interval(TICK_INTERVAL, self._tick)
        self._render_state()

    def on_unmount(self) -> None:
        if self.state is not None:
            self.state.close()

    def _refresh(self) -> None:
        self.state.refresh()
        self._render_state()

    def _tick(self) -> None:
        self.state.tick()
        self._render_state()

    def _render_state(self) -> None:
        state = self.state
        if state is None:
            return
        self.query_one(HeaderStats).update_stats(state)
        self._render_table(state)
        self.query_one("#status-line", Static).update(self._status_text(state))

    def _status_text(self, state: LiveState) -> str:
        if state.confirm is not None:
            c = state.confirm
            return (
                f"[b]Terminate PID {c.pid} ({escape(c.name)}, {c.cpu_percent:.1f}% cpu, "
                f"{format_bytes(c.memory_bytes).strip()})? y/n[/b]"
            )
        if state.status is not None:
            color = "yellow" if state.status.level is StatusLevel.WARN else "green"
            return f"[{color}]{escape(state.status.text)}[/{color}]"
        drill = f"  container {state.container_filter.label}" if state.container_filter else ""
        return (
            f"{state.view_mode.label}  sort {state.sort_key.value} {state.sort_dir.value}"
            f"  highlight {state.highlight_mode.value}{drill}"
        )

    def _render_table(self, state: LiveState) -> None:
        table = self.query_one("#main-table", DataTable)
        mode = state.view_mode
        if mode is not self._columns_for:
            table.clear(columns=True)
            table.add_columns(*self._columns(mode))
            self._columns_for = mode
        else:
            table.clear()

        cursor = None
        if mode.shows_processes:
            for row in state.rows:
                label = state.tree_labels.get(row.pid, row.name)
                style = "bold" if state.highlight_mode.matches(row) else ""
                table.add_row(
                    str(row.pid),
                    (row.user or "?")[:10],
                    row.status,
                    f"{row.cpu_percent:5.1f}",
                    format_bytes(row.memory_bytes),
                    format_pct(row.gpu_sm_pct),
                    format_uptime(row.uptime_seconds),
                    Text(label, style=style),
                )
            cursor = state.selected_index
        elif mode is ViewMode.GPU_FOCUS:
            for entry in state.gpu_process_entries():
                table.add_row(
                    str(entry.pid),
                    entry.kind or "-",
                    format_pct(entry.sm_pct),
                    format_pct(entry.mem_pct),
                    format_pct(entry.enc_pct),
                    format_pct(entry.dec_pct),
                    "-" if entry.fb_mb is None else f"{entry.fb_mb}M",
                )
        elif mode is ViewMode.SYSTEM_INFO:
            for gpu in state.gpu_list:
                table.add_row(
                    gpu.id,
                    Text(gpu.name),
                    gpu.kind.value,
                    gpu.driver or "-",
                    gpu.driver_version or "-",
                )
        else:
            for container in state.container_rows:
                rate = container.net_bytes_per_sec
                table.add_row(
                    container.label,
                    f"{container.cpu_percent:5.1f}",
                    format_bytes(container.memory_bytes),
                    str(container.process_count),
                    "-" if rate is None else f"{format_bytes(rate).strip()}/s",
                )
            cursor = state.container_index

        if cursor is not None and table.row_count:
            table.move_cursor(row=cursor)

    @staticmethod
    def _columns(mode: ViewMode) -> tuple[str, ...]:
        if mode.shows_processes:
            return ("PID", "USER", "S", "CPU%", "RES", "GPU%", "TIME", "Command")
        if mode is ViewMode.GPU_FOCUS:
            return ("PID", "T", "SM%", "MEM%", "ENC%", "DEC%", "VRAM")
        if mode is ViewMode.SYSTEM_INFO:
            return ("ID", "GPU", "Kind", "Driver", "Version")
        return ("Container", "CPU%", "MEM", "PROCS", "NET")

    def action_move(self, delta: int) -> None:
        if self.state.view_mode is ViewMode.CONTAINERS:
            self.state.move_container_selection(delta)
        elif self.state.view_mode is ViewMode.GPU_FOCUS:
            self.state.move_gpu_process_selection(delta)
        else:
            self.state.move_selection(delta)
        self._render_state()

    def action_sort(self) -> None:
        """Handle sort action - cycle through sort keys."""
        self.state.set_sort_key(self.state.sort_key.next())
        self.notify(f"Sort: {self.state.sort_key.value.upper()}")
        self._render_state()

    def action_invert(self) -> None:
        self.state.toggle_sort_dir()
        self._render_state()

    def action_tree(self) -> None:
        self.state.toggle_tree_view()
        self._render_state()

    def action_view(self) -> None:
        self.state.cycle_view_mode()
        # Containers are only sampled while they are on screen
        self.state.refresh()
        self._render_state()

    def action_highlight(self) -> None:
        self.state.cycle_highlight_mode()
        self._render_state()

    def action_next_gpu(self) -> None:
        self.state.select_next_gpu()
        self._render_state()

    def action_kill(self) -> None:
        self.state.open_confirm()
        self._render_state()

    def action_confirm(self) -> None:
        if self.state.confirm is not None:
            self.state.confirm_kill()
            self._render_state()

    def action_cancel(self) -> None:
        self.state.cancel_confirm()
        self._render_state()

    def action_enter_container(self) -> None:
        if self.state.view_mode is ViewMode.CONTAINERS:
            self.state.enter_container()
            self._render_state()

    def action_leave_container(self) -> None:
        self.state.exit_container_drill()
        self._render_state()

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        if self.state is not None:
            self.state.close()
        self.exit()


def main() -> None:
    """Entry point for dashtop application."""
    app = DashtopApp()
    app.run()


if __name__ == "__main__":
    main()
