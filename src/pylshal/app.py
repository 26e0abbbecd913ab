"""pylshal - Textual viewer for the HAL listing."""

import argparse
import importlib
import os
from collections.abc import Callable
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, VerticalScroll
from textual.widgets import DataTable, Footer, Static

from pylshal.ipc import IPC_CALL_WAIT, ServiceManager
from pylshal.lister import HalLister, ListOptions, parse_hal_types
from pylshal.manifest import build_manifest
from pylshal.models import (
    NO_PID,
    HalSnapshot,
    HalType,
    Partition,
    SortKey,
    Status,
    TableEntry,
    sort_entries,
)
from pylshal.monitor import HalMonitor
from pylshal.procinfo import parse_partition

_TYPE_LABELS = {
    HalType.BINDERIZED_SERVICES: "binderized",
    HalType.PASSTHROUGH_CLIENTS: "pt-client",
    HalType.PASSTHROUGH_LIBRARIES: "pt-lib",
}


def format_pids(pids: list[int]) -> str:
    """Space-separated pids, blank for none."""
    return " ".join(str(pid) for pid in pids)


def format_status(status: Status) -> str:
    """Readable names of the flags set in ``status``."""
    if status == Status.OK:
        return "OK"
    return " | ".join(flag.name for flag in Status if flag and flag in status)


class SummaryHeader(Static):
    """Header widget showing per-table counts and the cycle status."""

    DEFAULT_CSS = """
    SummaryHeader {
        height: auto;
        min-height: 3;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize SummaryHeader."""
        super().__init__("Fetching HALs...", *args, **kwargs)
        self._counts: dict[HalType, int] = {}
        self._status: Status = Status.OK
        self._warnings: int = 0

    def update_summary(self, snapshot: HalSnapshot) -> None:
        """Update the summary from a snapshot."""
        self._counts = {t: len(snapshot.table(t)) for t in HalType}
        self._status = snapshot.status
        self._warnings = sum(len(e.warnings) for e in snapshot.entries())
        self.update(self._render_summary())

    def _render_summary(self) -> str:
        counts = "  ".join(
            f"{_TYPE_LABELS[t]}: {self._counts.get(t, 0)}" for t in HalType
        )
        return (
            f"{counts}\n"
            f"Status: {format_status(self._status)}  Warnings: {self._warnings}"
        )


class HalTable(Container):
    """Container for the HAL data table."""

    DEFAULT_CSS = """
    HalTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize HalTable."""
        super().__init__(*args, **kwargs)
        self._sort_key: SortKey = SortKey.INTERFACE

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        return self._sort_key

    def compose(self) -> ComposeResult:
        """Compose the HAL table."""
        yield DataTable(id="hal-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#hal-table", DataTable)
        table.cursor_type = "row"

        table.add_column("Type", key="type", width=10)
        table.add_column("Interface", key="interface")
        table.add_column("Arch", key="arch", width=6)
        table.add_column("Thread Use", key="threads", width=10)
        table.add_column("Server", key="server", width=8)
        table.add_column("Clients", key="clients")

    def update_entries(self, snapshot: HalSnapshot) -> None:
        """Replace the table contents with the entries of ``snapshot``."""
        table = self.query_one("#hal-table", DataTable)
        table.clear()
        for hal_type in HalType:
            for entry in sort_entries(snapshot.table(hal_type), self._sort_key):
                self._add_row(table, hal_type, entry)

    def _add_row(self, table: DataTable, hal_type: HalType, entry: TableEntry) -> None:
        table.add_row(
            _TYPE_LABELS[hal_type],
            entry.interface_name,
            str(entry.arch),
            entry.thread_usage_text,
            "" if entry.server_pid == NO_PID else str(entry.server_pid),
            format_pids(entry.client_pids),
        )


class LshalApp(App):
    """Main pylshal application."""

    TITLE = "pylshal"
    SUB_TITLE = "HAL Listing"

    CSS = """
    Screen {
        layout: vertical;
    }

    #summary {
        dock: top;
    }

    #manifest-view {
        display: none;
        height: 1fr;
        border: solid $secondary;
    }

    #manifest-view.visible {
        display: block;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("m", "manifest", "Manifest"),
    ]

    def __init__(
        self,
        lister_factory: Callable[[], HalLister],
        manifest_partition: Partition = Partition.VENDOR,
        poll_rate: float = 2.0,
    ) -> None:
        """
        Initialize the LshalApp.

        Args:
            lister_factory: Builds the lister used for one cycle.
            manifest_partition: Partition shown by the manifest view.
            poll_rate: Seconds between cycles.
        """
        super().__init__()
        self._update_queue: Queue[HalSnapshot] = Queue()
        self._monitor = HalMonitor(
            self._update_queue,
            lister_factory,
            poll_rate=poll_rate,
        )
        self._manifest_partition = manifest_partition
        self._snapshot: HalSnapshot | None = None

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield SummaryHeader(id="summary")
        yield HalTable()
        with VerticalScroll(id="manifest-view"):
            yield Static("", id="manifest-text", markup=False)
        yield Footer()

    def on_mount(self) -> None:
        """Start the monitor when the app is mounted."""
        self._monitor.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the queue and show the most recent snapshot."""
        snapshot = None
        while True:
            try:
                snapshot = self._update_queue.get_nowait()
            except Empty:
                break

        if snapshot is not None:
            self.show_snapshot(snapshot)

    def show_snapshot(self, snapshot: HalSnapshot) -> None:
        """Update the UI with a new snapshot."""
        self._snapshot = snapshot
        self.query_one("#summary", SummaryHeader).update_summary(snapshot)
        self.query_one(HalTable).update_entries(snapshot)
        if self.query_one("#manifest-view").has_class("visible"):
            self._render_manifest()

    def _render_manifest(self) -> None:
        text = self.query_one("#manifest-text", Static)
        if self._snapshot is None:
            text.update("No snapshot yet.")
            return
        result = build_manifest(self._snapshot, self._manifest_partition)
        text.update(result.to_xml())

    def action_sort(self) -> None:
        """Cycle through sort keys."""
        hal_table = self.query_one(HalTable)
        new_sort_key = hal_table.cycle_sort()
        if self._snapshot is not None:
            hal_table.update_entries(self._snapshot)
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_manifest(self) -> None:
        """Toggle the skeleton manifest view."""
        view = self.query_one("#manifest-view")
        view.toggle_class("visible")
        if view.has_class("visible"):
            self._render_manifest()

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()


MANAGERS_ENV = "PYLSHAL_MANAGERS"

ManagersFactory = Callable[[], tuple[ServiceManager | None, ServiceManager | None]]


def load_managers(target: str) -> ManagersFactory:
    """
    Resolve ``module:callable`` to a factory of the two service managers.

    The callable takes no arguments and returns
    ``(service_manager, passthrough_manager)``; it is called once per cycle.
    Raises ValueError when ``target`` cannot be resolved.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"expected module:callable, got {target!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"cannot import {module_name}: {e}") from e
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"{target} is not callable")
    return factory


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pylshal", description=__doc__)
    parser.add_argument(
        "--managers",
        default=os.environ.get(MANAGERS_ENV),
        help=f"module:callable returning the two service managers (default: ${MANAGERS_ENV})",
    )
    parser.add_argument(
        "--types",
        default="b,c,l",
        help="comma-separated HAL types: binderized (b), passthrough_clients (c), passthrough_libs (l)",
    )
    parser.add_argument(
        "--partition",
        default=Partition.VENDOR.value,
        help="partition of the skeleton manifest (system, vendor, odm)",
    )
    parser.add_argument("--poll-rate", type=float, default=2.0, help="seconds between cycles")
    parser.add_argument("--timeout", type=float, default=IPC_CALL_WAIT, help="seconds per call")
    parser.add_argument("--jobs", type=int, default=1, help="binderized instances fetched at once")
    args = parser.parse_args(argv)

    if not args.managers:
        parser.error(f"no service managers configured; pass --managers or set {MANAGERS_ENV}")
    try:
        args.managers = load_managers(args.managers)
        args.types = parse_hal_types(args.types)
    except ValueError as e:
        parser.error(str(e))
    args.partition = parse_partition(args.partition)
    if args.partition is Partition.UNKNOWN:
        parser.error("--partition must be one of system, vendor, odm")
    return args


def main(argv: list[str] | None = None) -> None:
    """Entry point for the pylshal viewer."""
    args = parse_args(argv)
    options = ListOptions(
        types=args.types,
        ipc_timeout=args.timeout,
        max_workers=max(1, args.jobs),
    )

    def lister_factory() -> HalLister:
        service_manager, passthrough_manager = args.managers()
        return HalLister(service_manager, passthrough_manager, options=options)

    app = LshalApp(lister_factory, manifest_partition=args.partition, poll_rate=args.poll_rate)
    app.run()


if __name__ == "__main__":
    main()
