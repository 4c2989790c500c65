"""Apache provider: modules, sites, configuration tests and OCSP stapling."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from ..effective import EffectiveConfig
from ..errors import ExternalCommandFailure
from ..fileops import FileOps
from ..runner import CommandResult, CommandRunner
from .systemd import SystemdProvider

STAPLING_DIRECTIVE = "SSLStaplingCache shmcb:/var/run/ocsp(128000)"


class ApacheError(ExternalCommandFailure):
    """Raised when Apache management commands fail."""


@dataclass(slots=True)
class ApacheProvider:
    """Manage the Apache virtual host of a deployment."""

    runner: CommandRunner
    systemd: SystemdProvider
    files: FileOps
    service: str = "apache2"
    ctl_bin: str = "apache2ctl"

    name: ClassVar[str] = "apache"
    template_name: ClassVar[str] = "apache/vhost.conf.j2"
    certbot_plugin: ClassVar[str] = "apache"
    binaries: ClassVar[tuple[str, ...]] = ("apache2", "apache2ctl")

    def installed(self) -> bool:
        """Return True when either Apache binary is on the path."""
        return any(self.runner.which(binary) for binary in self.binaries)

    def is_active(self) -> bool:
        """Return True when the Apache service is running."""
        return self.systemd.is_active(self.service)

    def site_path(self, effective: EffectiveConfig) -> Path:
        """Return the configured ``sites-available`` file."""
        return Path(effective.apache_config_file)

    def prepare(self, effective: EffectiveConfig, *, tls: bool) -> None:
        """Enable ``headers`` and ``rewrite``, plus the TLS modules when needed."""
        modules = ["headers", "rewrite"]
        if tls:
            modules.extend(["ssl", "socache_shmcb"])
        self.enable_modules(*modules)

    def enable_modules(self, *modules: str) -> None:
        """Run ``a2enmod`` for *modules*."""
        self._run(["a2enmod", *modules])

    def enable_site(self, effective: EffectiveConfig) -> None:
        """Run ``a2ensite`` for the deployment's site name."""
        self._run(["a2ensite", effective.apache_site_name])

    def configtest(self) -> None:
        """Run ``apache2ctl configtest``; raise :class:`ApacheError` on failure."""
        self._run([self.ctl_bin, "configtest"])

    def configtest_result(self) -> CommandResult:
        """Run ``apache2ctl configtest`` and return the result without raising."""
        return self.runner.run([self.ctl_bin, "configtest"], sudo=True)

    def reload(self) -> None:
        """Reload the Apache service."""
        self.systemd.reload(self.service)

    def ensure_stapling_cache(self, conf_path: Path) -> bool:
        """Append the OCSP stapling cache directive unless already configured.

        Returns True when the file was changed.
        """
        # Read through the file seam: the conf is root-owned on a real host.
        current = self.files.read_file(conf_path)
        existing = current[0].decode("utf-8", errors="replace") if current else ""
        if "SSLStaplingCache" in existing:
            return False
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        self.files.append_text(conf_path, f"{prefix}{STAPLING_DIRECTIVE}\n")
        return True

    # ------------------------------------------------------------------
    def _run(self, args: list[str]) -> CommandResult:
        result = self.runner.run(args, sudo=True)
        if not result.ok:
            raise ApacheError(result.args, result.returncode, result.output)
        return result


__all__ = ["ApacheError", "ApacheProvider", "STAPLING_DIRECTIVE"]
