"""Single seam for every external command mmdeploy executes.

Providers never call :mod:`subprocess` directly; they go through a
:class:`SystemCommandRunner` so tests can substitute a fake that records
commands and returns scripted results.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from .errors import ExternalCommandFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Exit code and captured output of an external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return True when the command exited with status 0."""
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined diagnostic output, stderr first."""
        parts = [self.stderr.strip(), self.stdout.strip()]
        return "\n".join(part for part in parts if part)


class CommandRunner(Protocol):
    """Capability used by providers to run external commands."""

    def run(
        self,
        args: Sequence[str],
        *,
        sudo: bool = False,
        input_text: str | None = None,
        capture: bool = True,
    ) -> CommandResult:
        """Run *args* and return the result without raising on failure."""

    def which(self, name: str) -> str | None:
        """Return the resolved path of executable *name*, if installed."""


@dataclass(slots=True)
class SystemCommandRunner:
    """Run commands with :func:`subprocess.run`, optionally through ``sudo``."""

    sudo_bin: str = "sudo"

    def run(
        self,
        args: Sequence[str],
        *,
        sudo: bool = False,
        input_text: str | None = None,
        capture: bool = True,
    ) -> CommandResult:
        """Run *args*; a missing executable is reported as exit code 127."""
        command = [self.sudo_bin, *args] if sudo else list(args)
        logger.debug("run: %s", " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                input=input_text,
                capture_output=capture,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            return CommandResult(tuple(command), 127, "", f"{command[0]} not found: {exc}")
        return CommandResult(
            tuple(command),
            result.returncode,
            result.stdout or "",
            result.stderr or "",
        )

    def which(self, name: str) -> str | None:
        """Return the resolved path of executable *name*, if installed."""
        return shutil.which(name)


def check(result: CommandResult, *, summary: str | None = None) -> CommandResult:
    """Raise :class:`ExternalCommandFailure` when *result* is non-zero."""
    if not result.ok:
        raise ExternalCommandFailure(
            result.args,
            result.returncode,
            result.output,
            summary=summary,
        )
    return result


__all__ = ["CommandResult", "CommandRunner", "SystemCommandRunner", "check"]
