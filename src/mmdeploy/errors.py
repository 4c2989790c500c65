"""Exception taxonomy shared by the deployment core and the CLI.

Every error carries the :class:`ExitCode` the CLI should terminate with, so
command handlers only need a single ``except`` clause at the command
boundary.
"""
from __future__ import annotations

from collections.abc import Sequence
from enum import IntEnum
from pathlib import Path


class ExitCode(IntEnum):
    """Process exit status of an mmdeploy command."""

    OK = 0
    # Bad input: missing fields, unknown domain, failed lint.
    VALIDATION = 2
    # Host not ready: config absent, precondition unmet, running as root.
    ENVIRONMENT = 3
    # A system command (apache2ctl, certbot, systemctl, ...) failed.
    PROVIDER = 4


class MMDeployError(RuntimeError):
    """Base class for all errors raised by mmdeploy."""

    exit_code: ExitCode = ExitCode.VALIDATION


class ConfigError(MMDeployError):
    """Raised when configuration parsing or editing fails."""


class ConfigNotFound(MMDeployError):
    """Raised when a required configuration document does not exist."""

    exit_code = ExitCode.ENVIRONMENT

    def __init__(self, path: Path) -> None:
        """Record the missing *path*."""
        super().__init__(f"Configuration file not found: {path}")
        self.path = path


class ConfigBootstrapped(MMDeployError):
    """Raised after a configuration file was created from its template.

    This is a signal rather than a failure: the operator must review the new
    file and rerun the command.
    """

    exit_code = ExitCode.OK

    def __init__(self, path: Path, template: Path) -> None:
        """Record the freshly created *path* and the *template* it came from."""
        super().__init__(
            f"Configuration file created from {template}: {path}. "
            "Please edit it and run the command again."
        )
        self.path = path
        self.template = template


class EmptySection(ConfigError):
    """Raised when a section that must carry values has no body."""

    def __init__(self, section: str) -> None:
        """Record the empty *section* name."""
        super().__init__(f"Configuration for '{section}' is empty.")
        self.section = section


class DomainNotFound(MMDeployError):
    """Raised when a domain is not present in the registry."""

    def __init__(self, domain: str, available: Sequence[str] = ()) -> None:
        """Record the requested *domain* and the *available* names."""
        message = f"Domain '{domain}' not found in the domain registry."
        if available:
            message += f" Available: {', '.join(available)}."
        super().__init__(message)
        self.domain = domain
        self.available = tuple(available)


class OutOfRange(MMDeployError):
    """Raised when a numbered selection falls outside the list."""

    def __init__(self, choice: int, size: int) -> None:
        """Record the invalid *choice* and the list *size*."""
        if size:
            message = f"Invalid selection {choice}. Please enter a number between 1 and {size}."
        else:
            message = "No domains configured."
        super().__init__(message)
        self.choice = choice
        self.size = size


class ValidationFailure(MMDeployError):
    """Raised when the effective configuration is not usable."""


class MissingFields(ValidationFailure):
    """Raised when required effective configuration fields are absent."""

    def __init__(self, fields: Sequence[str], *, scope: str | None = None) -> None:
        """Record the missing *fields*."""
        joined = ", ".join(fields)
        prefix = f"{scope}: " if scope else ""
        super().__init__(f"{prefix}missing required configuration fields: {joined}")
        self.fields = list(fields)


class PreconditionFailure(MMDeployError):
    """Raised before any mutation when the host or sources are not ready."""

    exit_code = ExitCode.ENVIRONMENT


class ExternalCommandFailure(MMDeployError):
    """Raised when an external tool exits non-zero."""

    exit_code = ExitCode.PROVIDER

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        output: str = "",
        *,
        summary: str | None = None,
    ) -> None:
        """Record the failing *command* and its verbatim *output*."""
        rendered = " ".join(command)
        headline = summary or f"{rendered} failed (exit {returncode})"
        message = f"{headline}: {output.strip()}" if output.strip() else headline
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode
        self.output = output


class BackupError(MMDeployError):
    """Raised when snapshot operations fail."""

    exit_code = ExitCode.ENVIRONMENT


__all__ = [
    "BackupError",
    "ConfigBootstrapped",
    "ConfigError",
    "ConfigNotFound",
    "DomainNotFound",
    "EmptySection",
    "ExitCode",
    "ExternalCommandFailure",
    "MMDeployError",
    "MissingFields",
    "OutOfRange",
    "PreconditionFailure",
    "ValidationFailure",
]
