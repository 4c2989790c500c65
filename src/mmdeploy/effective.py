"""Effective per-run configuration.

An :class:`EffectiveConfig` is the merged view of the global configuration
and (in multi-domain mode) the selected domain's overrides. It is computed
once per invocation, passed explicitly to every pipeline stage and never
written back to disk.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from types import MappingProxyType

from .config import as_bool, as_int, as_list, as_mode

DEFAULT_APP_DIR = "meeting_meter"
DEFAULT_SOURCE_DIR = "../meeting_meter"

#: Entry points that must exist in every source tree.
REQUIRED_SOURCE_FILES: tuple[str, ...] = (
    "index.php",
    "meeting_meter_advanced.php",
    "demo.php",
)

#: Files copied when present; their absence is only a warning.
OPTIONAL_SOURCE_FILES: tuple[str, ...] = ("README.md", "snippets.php", ".htaccess")


@dataclass(frozen=True)
class EffectiveConfig:
    """Immutable configuration record consumed by the pipeline stages."""

    domain: str
    app_name: str
    app_dir: str
    web_root: str
    source_dir: str
    apache_config_file: str
    apache_site_name: str
    nginx_config_file: str
    nginx_sites_enabled: str
    secure_config_dir: str
    log_dir: str
    web_user: str
    web_group: str
    config_file_mode: int
    secure_dir_mode: int
    security_headers: bool
    rate_limiting: bool
    rate_limit: str
    ssl_stapling_conf: str
    php_min_version: str
    required_extensions: tuple[str, ...]
    upload_max_filesize: str
    post_max_size: str
    max_execution_time: str
    memory_limit: str
    session_gc_maxlifetime: str
    enable_ssl: bool
    ssl_email: str
    ssl_alt_domains: tuple[str, ...]
    letsencrypt_live_dir: str
    enable_service: bool
    service_file: str
    env_file: str
    enable_logrotate: bool
    logrotate_file: str
    log_retention_days: int
    enable_backup: bool
    backup_dir: str
    backup_retention_days: int | None
    backup_compress: bool
    base_dir: Path
    selected_domain: str | None
    raw: Mapping[str, str]

    @classmethod
    def from_values(
        cls,
        values: Mapping[str, str],
        *,
        base_dir: Path,
        selected_domain: str | None = None,
    ) -> EffectiveConfig:
        """Build the typed record from flattened string *values*."""

        def text(key: str, default: str = "") -> str:
            return values.get(key, default)

        return cls(
            domain=text("domain"),
            app_name=text("app_name"),
            app_dir=text("app_dir"),
            web_root=text("web_root"),
            source_dir=text("source_dir") or DEFAULT_SOURCE_DIR,
            apache_config_file=text("apache_config_file"),
            apache_site_name=text("apache_site_name"),
            nginx_config_file=text("nginx_config_file"),
            nginx_sites_enabled=text("nginx_sites_enabled") or "/etc/nginx/sites-enabled",
            secure_config_dir=text("secure_config_dir"),
            log_dir=text("log_dir"),
            web_user=text("web_user") or "www-data",
            web_group=text("web_group") or text("web_user") or "www-data",
            config_file_mode=as_mode(values.get("config_file_mode"), "config_file_mode", default=0o600),
            secure_dir_mode=as_mode(values.get("secure_dir_mode"), "secure_dir_mode", default=0o750),
            security_headers=as_bool(values.get("security_headers", "true")),
            rate_limiting=as_bool(values.get("rate_limiting")),
            rate_limit=text("rate_limit"),
            ssl_stapling_conf=text("ssl_stapling_conf") or "/etc/apache2/apache2.conf",
            php_min_version=text("php_min_version") or text("min_version") or "7.4",
            required_extensions=as_list(values.get("required_extensions")),
            upload_max_filesize=text("upload_max_filesize") or "10M",
            post_max_size=text("post_max_size") or "10M",
            max_execution_time=text("max_execution_time") or "30",
            memory_limit=text("memory_limit") or "128M",
            session_gc_maxlifetime=text("session_gc_maxlifetime") or "1440",
            enable_ssl=as_bool(values.get("enable_ssl")),
            ssl_email=text("ssl_email"),
            ssl_alt_domains=as_list(values.get("ssl_alt_domains")),
            letsencrypt_live_dir=text("letsencrypt_live_dir") or "/etc/letsencrypt/live",
            enable_service=as_bool(values.get("enable_service")),
            service_file=text("service_file"),
            env_file=text("env_file"),
            enable_logrotate=as_bool(values.get("enable_logrotate")),
            logrotate_file=text("logrotate_file"),
            log_retention_days=as_int(
                values.get("log_retention_days"), "log_retention_days", default=30
            )
            or 30,
            enable_backup=as_bool(values.get("enable_backup")),
            backup_dir=text("backup_dir"),
            backup_retention_days=as_int(
                values.get("backup_retention_days"), "backup_retention_days"
            ),
            backup_compress=as_bool(values.get("backup_compress")),
            base_dir=base_dir,
            selected_domain=selected_domain,
            raw=MappingProxyType(dict(values)),
        )

    # Derived paths ---------------------------------------------------
    @property
    def app_path(self) -> Path:
        """Directory the application files are deployed into."""
        return Path(self.web_root) / self.app_dir

    @property
    def source_path(self) -> Path:
        """Source tree, resolved relative to the configuration directory."""
        candidate = Path(self.source_dir).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.base_dir / candidate

    @property
    def runtime_config_secure(self) -> bool:
        """Return True when ``config.php`` lives outside the web root."""
        return bool(self.secure_config_dir) and Path(self.secure_config_dir) != self.app_path

    @property
    def runtime_config_dir(self) -> Path:
        """Directory receiving the generated ``config.php``."""
        if self.runtime_config_secure:
            return Path(self.secure_config_dir)
        return self.app_path

    @property
    def runtime_config_path(self) -> Path:
        """Path of the generated runtime configuration file."""
        return self.runtime_config_dir / "config.php"

    @property
    def log_file(self) -> Path | None:
        """Application log file, when a log directory is configured."""
        return Path(self.log_dir) / "app.log" if self.log_dir else None

    @property
    def service_name(self) -> str:
        """Unit name derived from :attr:`service_file`."""
        return Path(self.service_file).name

    @property
    def certificate_names(self) -> tuple[str, ...]:
        """Primary domain followed by alternate names, without duplicates."""
        names: list[str] = [self.domain]
        for alt in self.ssl_alt_domains:
            if alt not in names:
                names.append(alt)
        return tuple(names)

    @property
    def certificate_path(self) -> Path:
        """Full-chain certificate path issued by the ACME client."""
        return Path(self.letsencrypt_live_dir) / self.domain / "fullchain.pem"

    @property
    def certificate_key_path(self) -> Path:
        """Private key path issued by the ACME client."""
        return Path(self.letsencrypt_live_dir) / self.domain / "privkey.pem"

    def field_value(self, name: str) -> str:
        """Return the textual value of *name* for required-field checks."""
        if name in _FIELD_NAMES:
            value = getattr(self, name)
            if isinstance(value, bool):
                return "true" if value else "false"
            if isinstance(value, tuple):
                return ",".join(value)
            return "" if value is None else str(value)
        return self.raw.get(name, "")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {}
        for item in fields(self):
            if item.name == "raw":
                continue
            value = getattr(self, item.name)
            if isinstance(value, Path):
                value = str(value)
            elif isinstance(value, tuple):
                value = list(value)
            elif item.name.endswith("_mode"):
                value = f"{value:04o}"
            payload[item.name] = value
        payload["app_path"] = str(self.app_path)
        payload["runtime_config_path"] = str(self.runtime_config_path)
        return payload


_FIELD_NAMES = frozenset(item.name for item in fields(EffectiveConfig))


__all__ = [
    "DEFAULT_APP_DIR",
    "DEFAULT_SOURCE_DIR",
    "EffectiveConfig",
    "OPTIONAL_SOURCE_FILES",
    "REQUIRED_SOURCE_FILES",
]
