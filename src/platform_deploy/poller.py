"""Condition polling.

Waits until a predicate holds or a timeout elapses. Used everywhere the
deployment synchronizes against eventually-consistent external state (pods
starting, certificates being issued, a cluster becoming Active).

The interval is fixed per call site; there is no backoff.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import FatalError
from .shared.logging import get_logger

logger = get_logger(__name__)

# Intervals used by call sites
FAST_INTERVAL = 5.0  # pods, secrets, issuers
SLOW_INTERVAL = 10.0  # database clusters, webhooks
CLUSTER_INTERVAL = 30.0  # cluster provisioning


class WaitOutcome(Enum):
    """How a wait ended."""

    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"
    ERROR = "error"  # Timed out and the last attempt raised


@dataclass(frozen=True)
class WaitSpec:
    """What to wait for and for how long."""

    description: str
    timeout: float = 300.0
    interval: float = FAST_INTERVAL


@dataclass
class WaitResult:
    """Result of a wait."""

    outcome: WaitOutcome
    description: str
    attempts: int = 0
    elapsed_seconds: float = 0.0
    last_error: str | None = None
    value: Any = None

    @property
    def satisfied(self) -> bool:
        return self.outcome == WaitOutcome.SATISFIED

    def raise_if_unsatisfied(self, remediation: str | None = None) -> WaitResult:
        """Turn an unsatisfied wait into a FatalError (for strict preconditions)."""
        if not self.satisfied:
            detail = f" (last error: {self.last_error})" if self.last_error else ""
            raise FatalError(
                f"Timed out after {self.elapsed_seconds:.0f}s waiting for "
                f"{self.description}{detail}",
                remediation,
            )
        return self


class ConditionPoller:
    """Poll a predicate at a fixed interval until it holds or time runs out."""

    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize poller.

        Args:
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock in seconds (injectable for tests)
        """
        self._sleep = sleep
        self._clock = clock

    def wait(
        self,
        predicate: Callable[[], Any],
        spec: WaitSpec,
        on_attempt: Callable[[int, str | None], None] | None = None,
    ) -> WaitResult:
        """Call predicate until it returns a truthy value or spec.timeout elapses.

        Exceptions raised by the predicate count as "not yet": they are remembered
        as last_error and the predicate is retried on the next interval.

        Args:
            predicate: Zero-argument callable; truthy return means satisfied
            spec: Timeout and interval
            on_attempt: Optional callback called with (attempt, last_error)

        Returns:
            WaitResult; the predicate's final value is in .value
        """
        start = self._clock()
        attempt = 0
        last_error: str | None = None
        last_raised = False
        value: Any = None

        logger.info("waiting", target=spec.description, timeout=spec.timeout)

        while True:
            attempt += 1
            try:
                value = predicate()
                last_raised = False
            except Exception as e:
                value = None
                last_error = str(e) or type(e).__name__
                last_raised = True
                logger.debug("predicate raised", target=spec.description, error=last_error)

            elapsed = self._clock() - start
            if value:
                logger.info(
                    "condition satisfied",
                    target=spec.description,
                    attempts=attempt,
                    elapsed=round(elapsed, 1),
                )
                return WaitResult(
                    WaitOutcome.SATISFIED,
                    spec.description,
                    attempts=attempt,
                    elapsed_seconds=elapsed,
                    last_error=last_error,
                    value=value,
                )

            if on_attempt:
                on_attempt(attempt, last_error)

            if elapsed + spec.interval > spec.timeout:
                break
            self._sleep(spec.interval)

        elapsed = self._clock() - start
        outcome = WaitOutcome.ERROR if last_raised else WaitOutcome.TIMED_OUT
        logger.warning(
            "wait timed out",
            target=spec.description,
            attempts=attempt,
            elapsed=round(elapsed, 1),
            last_error=last_error,
        )
        return WaitResult(
            outcome,
            spec.description,
            attempts=attempt,
            elapsed_seconds=elapsed,
            last_error=last_error,
            value=value,
        )
