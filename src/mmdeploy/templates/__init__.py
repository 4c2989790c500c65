"""Template rendering for generated deployment artifacts.

Two renderers live here:

* :class:`TemplateEngine` renders the bundled Jinja2 templates (virtual
  hosts, logrotate rules, systemd units) with optional operator overrides
  from a directory that shadows the built-in files.
* :func:`render_placeholders` fills ``{{NAME}}`` tokens in the application's
  runtime configuration template. Tokens without a binding are left in place
  so an incomplete template stays visibly incomplete.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent

_PLACEHOLDER_RE = re.compile(r"\{\{([A-Za-z0-9_]+)\}\}")


def render_placeholders(template_text: str, bindings: Mapping[str, str]) -> str:
    """Replace every bound ``{{NAME}}`` token in *template_text*.

    Substitution happens in a single pass, so a value that itself contains
    ``{{...}}`` is inserted verbatim and never expanded. No escaping is
    applied to values.
    """

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in bindings:
            return str(bindings[name])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_substitute, template_text)


def unbound_placeholders(template_text: str, bindings: Mapping[str, str]) -> list[str]:
    """Return placeholder names in *template_text* that *bindings* does not cover."""
    seen: list[str] = []
    for name in _PLACEHOLDER_RE.findall(template_text):
        if name not in bindings and name not in seen:
            seen.append(name)
    return seen


@dataclass(slots=True)
class TemplateEngine:
    """Jinja2 environment resolving override templates before built-ins."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine that prefers templates found in *override_dir*."""
        loaders = []
        if override_dir is not None and override_dir.is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(FileSystemLoader(str(BUILTIN_TEMPLATES_DIR)))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        template = self.environment.get_template(template_name)
        return template.render(**context)


__all__ = ["TemplateEngine", "render_placeholders", "unbound_placeholders"]
