"""Domain registry resolution and management.

The registry (``domains.ini``) holds one ``[domain-name]`` section per
deployable domain. Resolution overlays the selected section on top of the
global configuration: a key present in the domain section always wins, even
when its value is empty; keys absent from the section fall back to the
global value.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from . import config as config_store
from .config import ConfigDocument, GlobalConfig
from .effective import DEFAULT_APP_DIR, DEFAULT_SOURCE_DIR, EffectiveConfig
from .errors import ConfigError, DomainNotFound, MissingFields, OutOfRange

#: Keys every effective configuration needs regardless of the mode.
BASE_REQUIRED_FIELDS: frozenset[str] = frozenset({"domain", "app_name", "app_dir", "web_root"})

#: Keys recognised in a domain section, in the order ``domains add`` writes them.
DOMAIN_KEYS: tuple[str, ...] = (
    "domain",
    "app_name",
    "web_root",
    "app_dir",
    "source_dir",
    "apache_config_file",
    "apache_site_name",
    "secure_config_dir",
    "log_dir",
    "enable_ssl",
    "ssl_email",
    "ssl_alt_domains",
    "backup_dir",
)


def list_domains(registry: ConfigDocument) -> list[str]:
    """Return domain names in the order their headers appear in the file."""
    return registry.section_names()


def select_domain(names: Sequence[str], choice: int) -> str:
    """Return the domain at 1-based *choice*; raise :class:`OutOfRange` otherwise."""
    if choice < 1 or choice > len(names):
        raise OutOfRange(choice, len(names))
    return names[choice - 1]


def resolve(
    global_config: GlobalConfig,
    registry: ConfigDocument | None,
    domain: str | None,
) -> EffectiveConfig:
    """Merge *global_config* with the overrides of *domain*.

    Domain keys win over global ones; a key left blank in the domain section
    falls back to the global value. With ``domain=None`` the single-domain
    defaults apply: ``domain`` falls back to ``default_domain`` and
    ``app_dir`` to ``meeting_meter``.
    """
    values = global_config.values()
    if domain is None:
        values["domain"] = values.get("domain") or values.get("default_domain", "")
        values["app_dir"] = values.get("app_dir") or DEFAULT_APP_DIR
        return EffectiveConfig.from_values(values, base_dir=global_config.base_dir)

    if registry is None or not registry.has_section(domain):
        available = list_domains(registry) if registry is not None else []
        raise DomainNotFound(domain, available)
    section = registry.section(domain)
    values.update({key: value for key, value in section.items() if value.strip()})
    return EffectiveConfig.from_values(
        values,
        base_dir=global_config.base_dir,
        selected_domain=domain,
    )


def validate(effective: EffectiveConfig, required: Iterable[str]) -> None:
    """Raise :class:`MissingFields` when any *required* field is blank."""
    missing = sorted(name for name in set(required) if not effective.field_value(name).strip())
    if missing:
        scope = f"domain '{effective.selected_domain}'" if effective.selected_domain else None
        raise MissingFields(missing, scope=scope)


def required_fields(
    effective: EffectiveConfig,
    *,
    web_server: bool = False,
    services: bool = False,
    backup: bool = False,
) -> set[str]:
    """Return the fields the selected stages need on *effective*."""
    required = set(BASE_REQUIRED_FIELDS)
    if web_server:
        required.update({"apache_config_file", "apache_site_name"})
    if effective.enable_ssl:
        required.add("ssl_email")
    if services:
        if effective.enable_service:
            required.update({"service_file", "env_file"})
        if effective.enable_logrotate:
            required.update({"logrotate_file", "log_dir"})
    if backup and effective.enable_backup:
        required.add("backup_dir")
    return required


# ----------------------------------------------------------------------
# Registry management
# ----------------------------------------------------------------------
@dataclass(slots=True)
class RegistryFinding:
    """Validation outcome for one domain section."""

    domain: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def load_registry(path: Path) -> ConfigDocument:
    """Load the domain registry at *path*."""
    return config_store.load(path)


def default_domain_values(
    domain: str,
    *,
    web_root: str,
    app_name: str | None = None,
    app_dir: str | None = None,
    source_dir: str | None = None,
    enable_ssl: bool = False,
    ssl_email: str = "",
) -> dict[str, str]:
    """Return the section body written by ``domains add`` for *domain*."""
    name = (app_name or "").strip() or domain
    directory = (app_dir or "").strip() or domain.replace(".", "_")
    return {
        "domain": domain,
        "app_name": name,
        "web_root": web_root,
        "app_dir": directory,
        "source_dir": (source_dir or "").strip() or DEFAULT_SOURCE_DIR,
        "apache_config_file": f"/etc/apache2/sites-available/{name}.conf",
        "apache_site_name": name,
        "secure_config_dir": f"/etc/{name}",
        "log_dir": f"/var/log/{name}",
        "enable_ssl": "true" if enable_ssl else "false",
        "ssl_email": ssl_email if enable_ssl else "",
        "ssl_alt_domains": f"www.{domain}",
        "backup_dir": f"/tmp/{name}_backup",
    }


_SECTION_COMMENTS = {
    "domain": "Domain-specific settings",
    "source_dir": "Source directory (relative to the configuration directory)",
    "apache_config_file": "Apache configuration",
    "secure_config_dir": "Security settings",
    "enable_ssl": "SSL settings",
    "backup_dir": "Backup settings",
}


def add_domain(path: Path, values: Mapping[str, str]) -> None:
    """Append a new domain section built from *values* to the registry."""
    domain = values.get("domain", "").strip()
    if not domain:
        raise ConfigError("Domain name cannot be empty.")
    if path.exists() and config_store.load(path).has_section(domain):
        raise ConfigError(f"Domain {domain} already exists.")
    ordered = {key: values[key] for key in DOMAIN_KEYS if key in values}
    ordered.update({key: value for key, value in values.items() if key not in ordered})
    config_store.append_section(path, domain, ordered, comments=_SECTION_COMMENTS)


def remove_domain(path: Path, domain: str) -> None:
    """Remove *domain* from the registry; raise :class:`DomainNotFound` if absent."""
    if not domain.strip():
        raise ConfigError("Domain name cannot be empty.")
    registry = config_store.load(path)
    if not registry.has_section(domain):
        raise DomainNotFound(domain, list_domains(registry))
    config_store.remove_section(path, domain)


def validate_registry(registry: ConfigDocument, *, base_dir: Path) -> list[RegistryFinding]:
    """Check every domain section for required keys and sane sources."""
    findings: list[RegistryFinding] = []
    app_dirs: dict[str, list[str]] = {}
    for name in list_domains(registry):
        app_dir = registry.section(name).get("app_dir", "").strip()
        if app_dir:
            app_dirs.setdefault(app_dir, []).append(name)

    for name in list_domains(registry):
        section = registry.section(name)
        finding = RegistryFinding(domain=name)
        for key in sorted(BASE_REQUIRED_FIELDS):
            if key not in section:
                finding.errors.append(f"Missing required field: {key}")

        source_dir = section.get("source_dir", "").strip()
        if source_dir:
            source_path = Path(source_dir).expanduser()
            if not source_path.is_absolute():
                source_path = base_dir / source_path
            if not source_path.is_dir():
                finding.warnings.append(f"Source directory does not exist: {source_path}")
            elif not (source_path / "index.php").is_file():
                finding.warnings.append(
                    f"Source directory exists but index.php not found: {source_path}"
                )
        else:
            finding.warnings.append(f"No source directory specified for domain: {name}")

        app_dir = section.get("app_dir", "").strip()
        if app_dir and len(app_dirs.get(app_dir, [])) > 1:
            finding.warnings.append(f"Duplicate app directory: {app_dir}")
        findings.append(finding)
    return findings


__all__ = [
    "BASE_REQUIRED_FIELDS",
    "DOMAIN_KEYS",
    "RegistryFinding",
    "add_domain",
    "default_domain_values",
    "list_domains",
    "load_registry",
    "remove_domain",
    "required_fields",
    "resolve",
    "select_domain",
    "validate",
    "validate_registry",
]
