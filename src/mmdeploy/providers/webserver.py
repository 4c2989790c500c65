"""Common surface of the supported web servers."""
from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from ..effective import EffectiveConfig


class WebServer(Protocol):
    """Operations the provisioning stages need from a web server."""

    name: str
    template_name: str
    certbot_plugin: str

    def installed(self) -> bool:
        """Return True when the server binaries are present."""

    def is_active(self) -> bool:
        """Return True when the server is running."""

    def site_path(self, effective: EffectiveConfig) -> Path:
        """Return the virtual host file for *effective*."""

    def prepare(self, effective: EffectiveConfig, *, tls: bool) -> None:
        """Enable whatever modules the virtual host relies on."""

    def enable_site(self, effective: EffectiveConfig) -> None:
        """Activate the virtual host."""

    def configtest(self) -> None:
        """Validate the server configuration; raise when invalid."""

    def reload(self) -> None:
        """Reload the server so configuration changes take effect."""


def detect_active(servers: Iterable[WebServer]) -> WebServer | None:
    """Return the first server reported active, or None."""
    for server in servers:
        if server.is_active():
            return server
    return None


def any_installed(servers: Iterable[WebServer]) -> bool:
    """Return True when at least one server is installed."""
    return any(server.installed() for server in servers)


__all__ = ["WebServer", "any_installed", "detect_active"]
