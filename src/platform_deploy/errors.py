"""Error kinds for the deployment pipeline.

Two kinds exist:

- FatalError: raised to abort the run. The CLI prints the message plus the
  remediation directive and exits non-zero.
- Advisory: a failure that is logged and the run continues. Advisories are
  collected in an AdvisoryLog and summarized once at the end of the run.

Gateway calls never raise for expected non-success; each call site decides which
kind a failure is.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from rich.console import Console
from rich.table import Table

from .shared.logging import get_logger

logger = get_logger(__name__)


class FatalError(Exception):
    """Unrecoverable deployment error."""

    def __init__(self, message: str, remediation: str | None = None):
        self.message = message
        self.remediation = remediation
        super().__init__(message)


@dataclass
class Advisory:
    """A non-fatal failure recorded during the run."""

    phase: str
    step: str
    message: str


@dataclass
class AdvisoryLog:
    """Collects advisory failures so operators triage once, at the end."""

    entries: list[Advisory] = field(default_factory=list)
    phase: str = "-"
    step: str = "-"

    def add(self, message: str, step: str | None = None) -> None:
        """Record an advisory for the current phase/step and log it as a warning."""
        entry = Advisory(phase=self.phase, step=step or self.step, message=message)
        self.entries.append(entry)
        logger.warning("advisory", phase=entry.phase, step=entry.step, message=message)

    def __len__(self) -> int:
        return len(self.entries)

    def __bool__(self) -> bool:
        # An empty log is still a valid log object
        return True

    def render(self, console: Console | None = None) -> None:
        """Print the advisory summary table."""
        console = console or Console(stderr=True)
        if not self.entries:
            console.print("[green]No advisories.[/green]")
            return

        table = Table(title=f"{len(self.entries)} advisory item(s) to review")
        table.add_column("Phase")
        table.add_column("Step")
        table.add_column("Message", overflow="fold")
        for entry in self.entries:
            table.add_row(entry.phase, entry.step, entry.message)
        console.print(table)
