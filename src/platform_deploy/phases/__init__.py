"""Phase catalogue and runner."""

from .context import DeploymentRun, RunContext
from .definitions import PHASES
from .runner import Phase, PhaseRunner, Step, StepPolicy

__all__ = [
    "PHASES",
    "DeploymentRun",
    "Phase",
    "PhaseRunner",
    "RunContext",
    "Step",
    "StepPolicy",
]
