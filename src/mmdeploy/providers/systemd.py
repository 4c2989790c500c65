"""Systemd provider for service state queries and unit management."""
from __future__ import annotations

from dataclasses import dataclass

from ..errors import ExternalCommandFailure
from ..runner import CommandResult, CommandRunner


class SystemdError(ExternalCommandFailure):
    """Raised when systemctl operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Wrap ``systemctl`` calls issued during provisioning."""

    runner: CommandRunner
    systemctl_bin: str = "systemctl"

    def is_active(self, unit: str) -> bool:
        """Return True when *unit* is currently active."""
        result = self.runner.run([self.systemctl_bin, "is-active", "--quiet", unit])
        return result.ok

    def daemon_reload(self) -> None:
        """Reload unit definitions."""
        self._systemctl("daemon-reload")

    def enable(self, unit: str) -> CommandResult:
        """Enable *unit*; the result is returned without raising."""
        return self._systemctl("enable", unit, check=False)

    def start(self, unit: str) -> CommandResult:
        """Start *unit*; the result is returned without raising."""
        return self._systemctl("start", unit, check=False)

    def reload(self, unit: str) -> None:
        """Reload *unit* so it picks up configuration changes."""
        self._systemctl("reload", unit)

    # ------------------------------------------------------------------
    def _systemctl(self, command: str, unit: str | None = None, *, check: bool = True) -> CommandResult:
        args = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        result = self.runner.run(args, sudo=True)
        if check and not result.ok:
            raise SystemdError(
                result.args,
                result.returncode,
                result.output,
                summary=f"{self.systemctl_bin} {command} failed (exit {result.returncode})",
            )
        return result


__all__ = ["SystemdError", "SystemdProvider"]
