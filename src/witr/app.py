"""witr - command line entry point and Textual result viewer."""

import argparse
import sys
from collections.abc import Callable, Sequence
from datetime import datetime

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Header, Static

from witr import output
from witr.errors import ConfigurationError, ProcessNotFoundError
from witr.inspector import inspect_process
from witr.logs import configure_logging
from witr.models import Process, Result


def format_bytes(size: float) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{int(size):5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_started(started_at: datetime | None) -> str:
    if started_at is None:
        return "unknown"
    return started_at.strftime("%Y-%m-%d %H:%M:%S")


def describe(process: Process) -> str:
    """Markup summary of the target process."""
    rows = [
        ("Command", process.cmdline or process.command),
        ("Executable", process.exe + (" (deleted)" if process.exe_deleted else "")),
        ("User", process.user),
        ("Started", format_started(process.started_at)),
        ("Working dir", process.working_dir),
        ("Git", f"{process.git_repo} ({process.git_branch})" if process.git_branch else process.git_repo),
        ("Service", process.service),
        ("Container", process.container),
        ("Health", process.health),
        ("Forked", process.forked.value),
        ("Memory", f"RSS {format_bytes(process.memory.rss).strip()} / VMS {format_bytes(process.memory.vms).strip()}"),
        ("Threads", str(process.thread_count)),
        ("Open files", f"{process.fd_count} of {process.fd_limit or 'unlimited'}"),
    ]
    if process.listening_ports:
        pairs = zip(process.bind_addresses, process.listening_ports)
        rows.append(("Listening", ", ".join(f"{addr}:{port}" for addr, port in pairs)))
    return "\n".join(f"[b]{label:<12}[/b] {escape(value)}" for label, value in rows if value)


class ProcessDetails(Static):
    """Panel listing the facts about the target process."""

    DEFAULT_CSS = """
    ProcessDetails {
        height: auto;
        padding: 1;
        background: $surface;
    }
    """


class LineageTable(Container):
    """Ancestors, the target itself and its children in one table."""

    DEFAULT_CSS = """
    LineageTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, result: Result, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._result = result

    def compose(self) -> ComposeResult:
        yield DataTable(id="lineage-table")

    def on_mount(self) -> None:
        table = self.query_one("#lineage-table", DataTable)
        table.cursor_type = "row"
        table.add_column("", key="role", width=9)
        table.add_column("PID", key="pid", width=8)
        table.add_column("PPID", key="ppid", width=8)
        table.add_column("Command", key="command")

        for ref in self._result.ancestry:
            table.add_row("ancestor", str(ref.pid), str(ref.ppid), escape(ref.command), key=f"a{ref.pid}")
        target = self._result.process
        table.add_row("[b]target[/b]", str(target.pid), str(target.ppid), escape(target.command), key=f"t{target.pid}")
        for ref in self._result.children:
            table.add_row("child", str(ref.pid), str(ref.ppid), escape(ref.command), key=f"c{ref.pid}")


class WitrApp(App):
    """Read-only viewer for one inspection Result."""

    TITLE = "witr"

    CSS = """
    Screen {
        layout: vertical;
    }

    #warnings {
        height: auto;
        max-height: 8;
        padding: 0 1;
        color: $warning;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("w", "toggle_warnings", "Warnings"),
    ]

    def __init__(self, result: Result) -> None:
        super().__init__()
        self._result = result
        self.sub_title = f"{result.display_name} (pid {result.process.pid})"

    @property
    def result(self) -> Result:
        return self._result

    def compose(self) -> ComposeResult:
        yield Header()
        yield ProcessDetails(describe(self._result.process), id="details")
        yield LineageTable(self._result)
        warnings = "\n".join(f"! {w}" for w in self._result.warnings) or "No warnings."
        yield Static(warnings, id="warnings", markup=False)
        yield Footer()

    def action_toggle_warnings(self) -> None:
        panel = self.query_one("#warnings", Static)
        panel.display = not panel.display


FORMATS: dict[str, Callable[[Result], str]] = {
    "json": output.to_json,
    "short": output.to_short_json,
    "tree": output.to_tree_json,
    "warnings": output.to_warnings_json,
    "env": output.render_env_only,
    "env-json": output.to_env_json,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="witr", description="Explain why a process is running.")
    parser.add_argument("pid", type=int, help="process id to inspect")
    group = parser.add_mutually_exclusive_group()
    for name in FORMATS:
        group.add_argument(f"--{name}", dest="format", action="store_const", const=name)
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the witr command."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    try:
        result = inspect_process(args.pid)
    except (ProcessNotFoundError, ConfigurationError) as exc:
        print(f"witr: {exc}", file=sys.stderr)
        return 1

    if args.format:
        text = FORMATS[args.format](result)
        sys.stdout.write(text if text.endswith("\n") else text + "\n")
        return 0

    WitrApp(result).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
