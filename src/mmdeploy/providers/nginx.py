"""Nginx provider for managing the deployment's server block."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from ..effective import EffectiveConfig
from ..errors import ExternalCommandFailure
from ..runner import CommandResult, CommandRunner
from .systemd import SystemdProvider


class NginxError(ExternalCommandFailure):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class NginxProvider:
    """Render-target paths and lifecycle commands for nginx sites."""

    runner: CommandRunner
    systemd: SystemdProvider
    sites_available: Path = Path("/etc/nginx/sites-available")
    service: str = "nginx"
    nginx_bin: str = "nginx"

    name: ClassVar[str] = "nginx"
    template_name: ClassVar[str] = "nginx/site.conf.j2"
    certbot_plugin: ClassVar[str] = "nginx"

    def installed(self) -> bool:
        """Return True when the nginx binary is on the path."""
        return self.runner.which(self.nginx_bin) is not None

    def is_active(self) -> bool:
        """Return True when the nginx service is running."""
        return self.systemd.is_active(self.service)

    def site_name(self, effective: EffectiveConfig) -> str:
        """Return the canonical site file name for *effective*."""
        base = effective.apache_site_name or effective.app_name
        return f"{base.replace('/', '-')}.conf"

    def site_path(self, effective: EffectiveConfig) -> Path:
        """Return the path to the nginx site configuration file."""
        if effective.nginx_config_file:
            return Path(effective.nginx_config_file)
        return self.sites_available / self.site_name(effective)

    def enabled_path(self, effective: EffectiveConfig) -> Path:
        """Return the path of the symlink in sites-enabled."""
        return Path(effective.nginx_sites_enabled) / self.site_path(effective).name

    def prepare(self, effective: EffectiveConfig, *, tls: bool) -> None:
        """Nginx needs no module toggling."""

    def enable_site(self, effective: EffectiveConfig) -> None:
        """Enable the site by pointing a sites-enabled symlink at it."""
        self._run(["ln", "-sfn", str(self.site_path(effective)), str(self.enabled_path(effective))])

    def configtest(self) -> None:
        """Run ``nginx -t`` to validate the configuration."""
        self._run([self.nginx_bin, "-t"])

    def reload(self) -> None:
        """Reload nginx to apply configuration changes."""
        self.systemd.reload(self.service)

    # ------------------------------------------------------------------
    def _run(self, args: list[str]) -> CommandResult:
        result = self.runner.run(args, sudo=True)
        if not result.ok:
            raise NginxError(result.args, result.returncode, result.output)
        return result


__all__ = ["NginxError", "NginxProvider"]
