"""Phase runner.

Executes the static phase catalogue in ascending order. Nothing about completed
phases is recorded: every step checks the collaborators before acting, so any
phase can be the first one run in an invocation.
"""

from __future__ import annotations

import os
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from rich.console import Console

from ..errors import FatalError
from ..shared.logging import get_logger
from .context import DeploymentRun, RunContext

logger = get_logger(__name__)


class StepPolicy(Enum):
    """What a step failure does to the run."""

    FATAL = "fatal"  # abort
    ADVISORY = "advisory"  # record, continue


@dataclass(frozen=True)
class Step:
    """One named unit of work inside a phase."""

    name: str
    action: Callable[[RunContext], None]
    policy: StepPolicy = StepPolicy.FATAL


@dataclass(frozen=True)
class Phase:
    """An ordered group of steps."""

    ordinal: int
    name: str
    title: str
    steps: tuple[Step, ...]


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s" if minutes else f"{secs}s"


class PhaseRunner:
    """Run a contiguous range of phases against one RunContext."""

    def __init__(self, phases: Sequence[Phase], context: RunContext,
                 console: Console | None = None):
        ordinals = [p.ordinal for p in phases]
        if ordinals != sorted(set(ordinals)):
            raise ValueError("Phase ordinals must be unique and ascending")
        self.phases = list(phases)
        self.context = context
        self.console = console or Console(stderr=True)
        self.current_phase: int | None = None

    @property
    def last_ordinal(self) -> int:
        return self.phases[-1].ordinal if self.phases else 0

    def run(self, start_phase: int = 0, skip_provisioning: bool = False,
            stop_phase: int | None = None) -> DeploymentRun:
        """Execute phases start_phase..stop_phase.

        Raises:
            FatalError: invalid range, missing cluster credential when resuming,
                or a FATAL step failure
        """
        run = DeploymentRun(
            start_phase=start_phase, stop_phase=stop_phase, skip_provisioning=skip_provisioning
        )
        self._check_range(run)

        kubeconfig = self.context.paths.kubeconfig
        if run.resuming:
            if not kubeconfig.exists():
                raise FatalError(
                    f"Resuming requires {kubeconfig} to exist",
                    "Run phase 0 first: platform-deploy deploy",
                )
            run.kubeconfig = kubeconfig
            os.environ["KUBECONFIG"] = str(kubeconfig)

        logger.info("deployment started", start=start_phase, stop=stop_phase,
                    skip_provisioning=skip_provisioning)

        try:
            for phase in self.phases:
                if not run.includes(phase.ordinal):
                    logger.debug("phase skipped", phase=phase.ordinal, name=phase.name)
                    continue
                self.run_phase(phase, run)

            total = run.elapsed()
            self.console.rule(f"Deployment finished in {format_duration(total)}")
            logger.info("deployment finished", elapsed=round(total, 1),
                        advisories=len(self.context.advisories))
        finally:
            # Warnings gathered before an abort still matter to the operator
            self.context.advisories.render(self.console)
        return run

    def _check_range(self, run: DeploymentRun) -> None:
        if run.start_phase < 0 or run.start_phase > self.last_ordinal:
            raise FatalError(
                f"--from must be between 0 and {self.last_ordinal}, got {run.start_phase}"
            )
        if run.stop_phase is not None and run.stop_phase < run.start_phase:
            raise FatalError(f"--to ({run.stop_phase}) is before --from ({run.start_phase})")

    def run_phase(self, phase: Phase, run: DeploymentRun) -> None:
        """Run every step of one phase, applying each step's failure policy."""
        self.current_phase = phase.ordinal
        ctx = self.context
        self.console.rule(f"[bold blue]PHASE {phase.ordinal}: {phase.title}")
        ctx.advisories.phase = f"{phase.ordinal} {phase.name}"
        started = time.monotonic()

        for step in phase.steps:
            ctx.advisories.step = step.name
            logger.info("step", phase=phase.ordinal, step=step.name)
            try:
                step.action(ctx)
            except FatalError as e:
                if step.policy is StepPolicy.FATAL:
                    logger.error("step failed", phase=phase.ordinal, step=step.name,
                                 error=e.message)
                    raise
                ctx.advisories.add(e.message)
            except Exception as e:
                if step.policy is StepPolicy.FATAL:
                    logger.exception("step crashed", phase=phase.ordinal, step=step.name)
                    raise
                ctx.advisories.add(f"{type(e).__name__}: {e}")

        elapsed = time.monotonic() - started
        run.timings[phase.ordinal] = elapsed
        ctx.echo(f"✓ Phase {phase.ordinal} ({phase.name}) completed in {format_duration(elapsed)}")
        logger.info("phase complete", phase=phase.ordinal, elapsed=round(elapsed, 1))
