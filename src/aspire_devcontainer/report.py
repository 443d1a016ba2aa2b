"""Aggregated end-of-run report for lifecycle and verification commands.

Every check a command performs is recorded as a :class:`Check`. Warnings are
benign (the environment still works, possibly slower); errors are actionable.
The report is rendered once at the end of a run so a user sees every problem
together instead of scattered coloured lines.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from rich.table import Table

from . import console as out
from .errors import ExitCode


class Status(StrEnum):
    """Outcome of a single check."""

    OK = "ok"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SKIPPED = "skipped"


_STYLES: dict[Status, str] = {
    Status.OK: "green",
    Status.INFO: "blue",
    Status.WARNING: "yellow",
    Status.ERROR: "red",
    Status.SKIPPED: "dim",
}

_PRINTERS = {
    Status.OK: out.success,
    Status.INFO: out.info,
    Status.WARNING: out.warning,
    Status.ERROR: out.error,
    Status.SKIPPED: out.info,
}


@dataclass(frozen=True, slots=True)
class Check:
    """A single named check outcome."""

    name: str
    status: Status
    detail: str = ""


@dataclass
class Report:
    """Ordered collection of checks with an overall verdict."""

    title: str
    checks: list[Check] = field(default_factory=list)
    echo: bool = True

    def add(self, name: str, status: Status, detail: str = "") -> Check:
        check = Check(name=name, status=status, detail=detail)
        self.checks.append(check)
        if self.echo:
            message = f"{name}: {detail}" if detail else name
            _PRINTERS[status](message)
        return check

    def ok(self, name: str, detail: str = "") -> Check:
        return self.add(name, Status.OK, detail)

    def info(self, name: str, detail: str = "") -> Check:
        return self.add(name, Status.INFO, detail)

    def warning(self, name: str, detail: str = "") -> Check:
        return self.add(name, Status.WARNING, detail)

    def error(self, name: str, detail: str = "") -> Check:
        return self.add(name, Status.ERROR, detail)

    def skipped(self, name: str, detail: str = "") -> Check:
        return self.add(name, Status.SKIPPED, detail)

    def count(self, status: Status) -> int:
        return sum(1 for check in self.checks if check.status is status)

    @property
    def failed(self) -> bool:
        return self.count(Status.ERROR) > 0

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode.FAILURE if self.failed else ExitCode.OK

    def by_name(self, name: str) -> Check | None:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def render(self) -> None:
        """Print the summary table."""
        table = Table(title=self.title, show_lines=False)
        table.add_column("Check")
        table.add_column("Status")
        table.add_column("Detail", overflow="fold")
        for check in self.checks:
            style = _STYLES[check.status]
            table.add_row(check.name, f"[{style}]{check.status.value}[/{style}]", check.detail)
        out.console.print()
        out.console.print(table)
        summary = (
            f"{self.count(Status.OK)} ok, {self.count(Status.WARNING)} warning(s), "
            f"{self.count(Status.ERROR)} error(s)"
        )
        if self.failed:
            out.error(summary)
        else:
            out.success(summary)
