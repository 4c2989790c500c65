"""Provider interfaces for mmdeploy."""
from __future__ import annotations

from .apache import STAPLING_DIRECTIVE, ApacheError, ApacheProvider
from .certbot import CertbotError, CertbotProvider, CertificateReport
from .nginx import NginxError, NginxProvider
from .php import PhpError, PhpProvider, parse_php_version
from .systemd import SystemdError, SystemdProvider
from .webserver import WebServer, any_installed, detect_active

__all__ = [
    "STAPLING_DIRECTIVE",
    "ApacheError",
    "ApacheProvider",
    "CertbotError",
    "CertbotProvider",
    "CertificateReport",
    "NginxError",
    "NginxProvider",
    "PhpError",
    "PhpProvider",
    "SystemdError",
    "SystemdProvider",
    "WebServer",
    "any_installed",
    "detect_active",
    "parse_php_version",
]
