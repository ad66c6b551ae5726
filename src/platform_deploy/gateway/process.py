"""External process invocation.

All command-line collaborators (terraform, kubectl, helm, and the secret-store CLI
reached through kubectl exec) go through CommandRunner so that every call yields a
CommandResult instead of raising.
"""

from __future__ import annotations

import json
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..shared.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 600


@dataclass
class CommandResult:
    """Outcome of one external command."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def message(self) -> str:
        """Best human-readable summary of the outcome."""
        return (self.stderr or self.stdout).strip()

    def json(self) -> Any:
        """Parse stdout as JSON; None when stdout is empty or not JSON."""
        try:
            return json.loads(self.stdout) if self.stdout.strip() else None
        except json.JSONDecodeError:
            return None


class CommandRunner:
    """Run external commands and capture their output."""

    def __init__(self, env: dict[str, str] | None = None, cwd: Path | None = None):
        """Initialize runner.

        Args:
            env: Extra environment variables for every command
            cwd: Working directory for every command
        """
        self.env = env or {}
        self.cwd = cwd

    def run(
        self,
        args: list[str],
        input: str | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
        env: dict[str, str] | None = None,
        cwd: Path | None = None,
    ) -> CommandResult:
        """Run a command.

        Args:
            args: Command and arguments
            input: Text passed on stdin
            timeout: Seconds before the command is killed
            env: Extra environment variables for this command only
            cwd: Working directory override

        Returns:
            CommandResult. A missing binary yields returncode 127, a timeout 124.
        """
        merged_env = None
        if self.env or env:
            merged_env = {**os.environ, **self.env, **(env or {})}

        logger.debug("exec", command=args[0], argc=len(args))
        try:
            result = subprocess.run(
                args,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=merged_env,
                cwd=cwd or self.cwd,
            )
        except FileNotFoundError:
            return CommandResult(args, 127, stderr=f"{args[0]} not found. Is {args[0]} installed?")
        except subprocess.TimeoutExpired:
            return CommandResult(args, 124, stderr=f"{args[0]} timed out after {timeout}s")

        return CommandResult(args, result.returncode, result.stdout or "", result.stderr or "")
