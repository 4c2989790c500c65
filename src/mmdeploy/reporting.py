"""Operator-facing status lines and prompts.

Pipeline stages report through a :class:`StatusReporter` so the console
output (``[INFO]``/``[WARNING]``/``[ERROR]`` lines) and the structured
operation log stay in step. Questions go through a :class:`Prompter` so
tests can script the answers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

import typer
from rich.console import Console
from rich.markup import escape

from .logging import OperationScope


class ConflictPolicy(str, Enum):
    """What to do when a generated artifact already exists."""

    ASK = "ask"
    OVERWRITE = "overwrite"
    KEEP = "keep"


class Prompter(Protocol):
    """Blocking operator questions."""

    def confirm(self, question: str, *, default: bool = False) -> bool:
        """Return the operator's yes/no answer."""

    def ask(self, question: str, *, default: str = "", secret: bool = False) -> str:
        """Return a free-text answer, *default* when left blank."""


@dataclass(slots=True)
class TyperPrompter:
    """Prompt on the terminal; ``assume_defaults`` answers every question with its default."""

    assume_defaults: bool = False

    def confirm(self, question: str, *, default: bool = False) -> bool:
        """Return the operator's yes/no answer."""
        if self.assume_defaults:
            return default
        return typer.confirm(question, default=default)

    def ask(self, question: str, *, default: str = "", secret: bool = False) -> str:
        """Return a free-text answer, *default* when left blank."""
        if self.assume_defaults:
            return default
        answer = typer.prompt(
            question,
            default=default,
            show_default=bool(default) and not secret,
            hide_input=secret,
        )
        return str(answer).strip() or default


@dataclass
class StatusReporter:
    """Print stage events and mirror them into the operation scope."""

    console: Console
    op: OperationScope | None = None
    warnings: list[str] = field(default_factory=list)
    changed: int = 0

    def info(self, message: str, *, step: str | None = None) -> None:
        """Report progress."""
        self.console.print(f"[green]\\[INFO][/green] {escape(message)}")
        if self.op is not None:
            self.op.add_step(step or "info", status="info", detail=message)

    def warning(self, message: str, *, step: str | None = None) -> None:
        """Report a soft failure; the run continues."""
        self.console.print(f"[yellow]\\[WARNING][/yellow] {escape(message)}")
        self.warnings.append(message)
        if self.op is not None:
            self.op.add_step(step or "warning", status="warning", detail=message)

    def error(self, message: str, *, step: str | None = None) -> None:
        """Report a failure line; raising is left to the caller."""
        self.console.print(f"[red]\\[ERROR][/red] {escape(message)}")
        if self.op is not None:
            self.op.add_step(step or "error", status="error", detail=message)

    def mark_changed(self, count: int = 1) -> None:
        """Count artifacts written during the run."""
        self.changed += count


__all__ = ["ConflictPolicy", "Prompter", "StatusReporter", "TyperPrompter"]
