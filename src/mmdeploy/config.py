"""Configuration store for mmdeploy.

Both the global deployment configuration (``deploy.ini``) and the domain
registry (``domains.ini``) use the same small sectioned ``key = value``
format::

    # comment
    [general]
    app_name = meeting_meter
    web_root = /var/www/html

Values are always strings on disk. Booleans are the literals ``true`` and
``false``; they are converted to real booleans at the parsing boundary by
:func:`as_bool` and never compared as text further in.

Sources are layered the same way for every command:

1. The file selected by ``--config-file``, ``MMDEPLOY_CONFIG_FILE`` or
   ``./deploy.ini``.
2. Environment variables ``MMDEPLOY_<SECTION>__<KEY>`` which override a
   single key after the file is read, e.g.::

       export MMDEPLOY_SSL__ENABLE_SSL=false

Editing helpers work on the raw text so comments and layout survive adding
or removing a domain.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigBootstrapped, ConfigError, ConfigNotFound, EmptySection

logger = logging.getLogger(__name__)

ENV_PREFIX = "MMDEPLOY_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_CONFIG_FILE = "deploy.ini"
DEFAULT_DOMAINS_FILE = "domains.ini"
DEFAULT_OPERATIONS_LOG_DIR = "~/.local/state/mmdeploy/logs"

#: Name of the implicit section holding keys that precede any header.
ROOT_SECTION = ""

BUILTIN_EXAMPLES_DIR = Path(__file__).resolve().parent / "templates" / "examples"

_HEADER_RE = re.compile(r"^\[(?P<name>.*)\]$")


@dataclass
class ConfigDocument:
    """Parsed sectioned document, preserving section order."""

    sections: dict[str, dict[str, str]] = field(default_factory=dict)
    path: Path | None = None

    def section_names(self) -> list[str]:
        """Return named sections in order of first appearance."""
        return [name for name in self.sections if name != ROOT_SECTION]

    def has_section(self, name: str) -> bool:
        """Return True when *name* is a section of the document."""
        return name in self.sections

    def section(self, name: str) -> dict[str, str]:
        """Return a copy of the key/value mapping of section *name*."""
        return dict(self.sections.get(name, {}))

    def get(self, section: str, key: str, default: str | None = None) -> str | None:
        """Return a single value, or *default* when absent."""
        return self.sections.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: str) -> None:
        """Set *key* in *section*, creating the section when missing."""
        self.sections.setdefault(section, {})[key] = value

    def flatten(self) -> dict[str, str]:
        """Merge every section into one mapping; later sections win."""
        merged: dict[str, str] = {}
        for values in self.sections.values():
            merged.update(values)
        return merged

    def to_dict(self) -> dict[str, dict[str, str]]:
        """Return a serialisable representation."""
        return {name or "(root)": dict(values) for name, values in self.sections.items()}

    def dumps(self) -> str:
        """Render the document back to text (comments are not preserved)."""
        chunks: list[str] = []
        root = self.sections.get(ROOT_SECTION)
        if root:
            chunks.append("".join(f"{key} = {value}\n" for key, value in root.items()))
        for name in self.section_names():
            body = "".join(f"{key} = {value}\n" for key, value in self.sections[name].items())
            chunks.append(f"[{name}]\n{body}")
        return "\n".join(chunks)


# ----------------------------------------------------------------------
# Parsing and persistence
# ----------------------------------------------------------------------
def parse(text: str, *, path: Path | None = None) -> ConfigDocument:
    """Parse *text* into a :class:`ConfigDocument`."""
    document = ConfigDocument(path=path)
    current = ROOT_SECTION
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith(("#", ";")):
            continue
        header = _HEADER_RE.match(line)
        if header:
            name = header.group("name").strip()
            if not name:
                where = f"{path}:{lineno}" if path else f"line {lineno}"
                raise ConfigError(f"Empty section header at {where}.")
            current = name
            document.sections.setdefault(current, {})
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            logger.debug("Ignoring malformed config line %s: %r", lineno, raw_line)
            continue
        document.sections.setdefault(current, {})[key] = value.strip()
    return document


def load(path: Path) -> ConfigDocument:
    """Load the document at *path*; raise :class:`ConfigNotFound` when missing."""
    path = path.expanduser()
    if not path.is_file():
        raise ConfigNotFound(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc
    return parse(text, path=path)


def load_or_bootstrap(path: Path, template_path: Path | None = None) -> ConfigDocument:
    """Load *path*, creating it from *template_path* when missing.

    A freshly created file is never used for the current run: the caller is
    told to edit it and rerun via :class:`ConfigBootstrapped`.
    """
    path = path.expanduser()
    if path.is_file():
        return load(path)
    template = template_path or example_for(path)
    if not template.is_file():
        raise ConfigNotFound(template)
    path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(template, path)
    logger.info("Bootstrapped %s from %s", path, template)
    raise ConfigBootstrapped(path, template)


def save(path: Path, document: ConfigDocument) -> None:
    """Persist *document* to *path* atomically."""
    _atomic_write(path.expanduser(), document.dumps())


def require_section(document: ConfigDocument, name: str) -> dict[str, str]:
    """Return section *name*; raise :class:`EmptySection` when it has no values."""
    values = document.section(name)
    if not values:
        raise EmptySection(name)
    return values


def example_for(path: Path) -> Path:
    """Return the example template used to bootstrap *path*.

    A sibling ``<name>.example`` file wins over the bundled copy.
    """
    sibling = path.with_name(f"{path.name}.example")
    if sibling.is_file():
        return sibling
    return BUILTIN_EXAMPLES_DIR / f"{path.name}.example"


# ----------------------------------------------------------------------
# Text-level editing
# ----------------------------------------------------------------------
def append_section(
    path: Path,
    name: str,
    values: Mapping[str, str],
    *,
    comments: Mapping[str, str] | None = None,
) -> None:
    """Append a ``[name]`` section to the file at *path*.

    ``comments`` maps a key to a comment line emitted right before it.
    """
    existing = path.read_text(encoding="utf-8") if path.exists() else ""
    lines = [f"[{name}]"]
    for key, value in values.items():
        comment = (comments or {}).get(key)
        if comment:
            if len(lines) > 1:
                lines.append("")
            lines.append(f"# {comment}")
        lines.append(f"{key} = {value}")
    block = "\n".join(lines) + "\n"
    if existing and not existing.endswith("\n"):
        existing += "\n"
    separator = "\n" if existing.strip() else ""
    _atomic_write(path, existing + separator + block)


def remove_section(path: Path, name: str) -> bool:
    """Remove section *name* and its body from *path*; return True if found."""
    text = path.read_text(encoding="utf-8")
    kept: list[str] = []
    removing = False
    found = False
    for line in text.splitlines(keepends=True):
        header = _HEADER_RE.match(line.strip())
        if header:
            removing = header.group("name").strip() == name
            found = found or removing
        if not removing:
            kept.append(line)
    if not found:
        return False
    _atomic_write(path, "".join(kept).rstrip("\n") + "\n")
    return True


def set_values(
    path: Path,
    values: Mapping[str, str],
    *,
    section: str | None = None,
) -> None:
    """Replace ``key = value`` lines in *path*, appending missing keys.

    When *section* is given only lines inside that section are considered and
    missing keys are appended to it (the section is created if needed).
    Otherwise the first occurrence anywhere in the file is replaced.
    """
    lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
    pending = dict(values)
    current = ROOT_SECTION
    section_end: int | None = None
    for index, raw_line in enumerate(lines):
        stripped = raw_line.strip()
        header = _HEADER_RE.match(stripped)
        if header:
            if section is not None and current == section:
                section_end = index
            current = header.group("name").strip()
            continue
        if section is not None and current != section:
            continue
        if not stripped or stripped.startswith(("#", ";")):
            continue
        key = stripped.partition("=")[0].strip()
        if key in pending:
            lines[index] = f"{key} = {pending.pop(key)}"
    if section is not None and current == section and section_end is None:
        section_end = len(lines)

    if pending:
        additions = [f"{key} = {value}" for key, value in pending.items()]
        if section is None:
            lines.extend(additions)
        elif section_end is None:
            if lines and lines[-1].strip():
                lines.append("")
            lines.append(f"[{section}]")
            lines.extend(additions)
        else:
            insert_at = section_end
            while insert_at > 0 and not lines[insert_at - 1].strip():
                insert_at -= 1
            lines[insert_at:insert_at] = additions
    _atomic_write(path, "\n".join(lines) + "\n")


# ----------------------------------------------------------------------
# Environment layering
# ----------------------------------------------------------------------
def locate_config_file(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str] | None = None,
) -> Path:
    """Return the global configuration path following the lookup order."""
    resolved_env = os.environ if env is None else env
    if cli_override:
        return Path(cli_override).expanduser()
    if resolved_env.get(CONFIG_ENV_VAR):
        return Path(resolved_env[CONFIG_ENV_VAR]).expanduser()
    return Path.cwd() / DEFAULT_CONFIG_FILE


def apply_env_overrides(document: ConfigDocument, env: Mapping[str, str]) -> ConfigDocument:
    """Apply ``MMDEPLOY_<SECTION>__<KEY>`` overrides to *document* in place."""
    for name, value in _iter_env_overrides(env):
        section, key = name
        document.set(section, key, value)
    return document


def _iter_env_overrides(env: Mapping[str, str]) -> Iterator[tuple[tuple[str, str], str]]:
    for raw_key, value in sorted(env.items()):
        if not raw_key.startswith(ENV_PREFIX) or raw_key in RESERVED_ENV_KEYS:
            continue
        remainder = raw_key[len(ENV_PREFIX) :]
        section, sep, key = remainder.partition("__")
        if not sep or not section or not key:
            continue
        yield (section.lower(), key.lower()), value


# ----------------------------------------------------------------------
# Typed views
# ----------------------------------------------------------------------
def as_bool(value: str | None) -> bool:
    """Return True only for the literal ``true`` (case-insensitive)."""
    return (value or "").strip().lower() == "true"


def as_list(value: str | None) -> tuple[str, ...]:
    """Split a comma separated value, trimming items and dropping blanks."""
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def as_int(value: str | None, key: str, *, default: int | None = None) -> int | None:
    """Parse an integer value, returning *default* when blank."""
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip(), 10)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {value!r}.") from exc


def as_mode(value: str | None, key: str, *, default: int) -> int:
    """Parse an octal permission mode such as ``0600``."""
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip(), 8)
    except ValueError as exc:
        raise ConfigError(f"Invalid file mode for {key}: {value!r}.") from exc


@dataclass(frozen=True)
class GlobalConfig:
    """Global deployment configuration loaded from ``deploy.ini``."""

    path: Path
    document: ConfigDocument

    @property
    def base_dir(self) -> Path:
        """Directory relative paths in the configuration are resolved against."""
        return self.path.parent

    def values(self) -> dict[str, str]:
        """Return every key flattened across sections."""
        return self.document.flatten()

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the flattened value for *key*."""
        return self.values().get(key, default)

    @property
    def multi_domain_enabled(self) -> bool:
        """Return True when deployments target a domain from the registry."""
        return as_bool(self.get("multi_domain_enabled"))

    @property
    def domains_file(self) -> Path:
        """Return the path of the domain registry."""
        return self.resolve_path(self.get("domains_file") or DEFAULT_DOMAINS_FILE)

    @property
    def config_template(self) -> Path | None:
        """Return the configured runtime config template, if any."""
        raw = self.get("config_template")
        if raw:
            return self.resolve_path(raw)
        sibling = self.base_dir / "config.php.template"
        return sibling if sibling.is_file() else None

    @property
    def operations_log_dir(self) -> Path:
        """Return the directory of the structured operations log."""
        return Path(self.get("operations_log_dir") or DEFAULT_OPERATIONS_LOG_DIR).expanduser()

    def resolve_path(self, raw: str) -> Path:
        """Resolve *raw* relative to :attr:`base_dir` unless absolute."""
        candidate = Path(raw).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.base_dir / candidate

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the configuration."""
        return {
            "config_file": str(self.path),
            "domains_file": str(self.domains_file),
            "multi_domain_enabled": self.multi_domain_enabled,
            "sections": self.document.to_dict(),
        }


def load_global_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    bootstrap: bool = False,
) -> GlobalConfig:
    """Load the global configuration and apply environment overrides."""
    resolved_env = dict(os.environ if env is None else env)
    path = locate_config_file(config_file, resolved_env)
    document = load_or_bootstrap(path) if bootstrap else load(path)
    apply_env_overrides(document, resolved_env)
    return GlobalConfig(path=path, document=document)


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = path.stat().st_mode & 0o777 if path.exists() else 0o644
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_path, path)
        os.chmod(path, mode)
    except OSError as exc:
        raise ConfigError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "ConfigDocument",
    "GlobalConfig",
    "ROOT_SECTION",
    "append_section",
    "apply_env_overrides",
    "as_bool",
    "as_int",
    "as_list",
    "as_mode",
    "example_for",
    "load",
    "load_global_config",
    "load_or_bootstrap",
    "locate_config_file",
    "parse",
    "remove_section",
    "require_section",
    "save",
    "set_values",
]
