"""PHP interpreter queries: version, modules, syntax checks and scripts."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from ..errors import ExternalCommandFailure, PreconditionFailure
from ..runner import CommandResult, CommandRunner

_VERSION_RE = re.compile(r"^\s*(\d+(?:\.\d+){0,2})")
_VERSION_SCRIPT = "echo PHP_VERSION;"


class PhpError(ExternalCommandFailure):
    """Raised when the PHP interpreter cannot be queried."""


def parse_php_version(raw: str) -> Version:
    """Parse a ``PHP_VERSION`` string such as ``8.1.2-1ubuntu2.14``."""
    match = _VERSION_RE.match(raw)
    if match is None:
        raise PreconditionFailure(f"Unable to determine PHP version from {raw.strip()!r}.")
    try:
        return Version(match.group(1))
    except InvalidVersion as exc:  # pragma: no cover - regex already constrains the input
        raise PreconditionFailure(f"Invalid PHP version {raw.strip()!r}.") from exc


@dataclass(slots=True)
class PhpProvider:
    """Run the ``php`` CLI through the command runner."""

    runner: CommandRunner
    php_bin: str = "php"

    def installed(self) -> bool:
        """Return True when the interpreter is on the path."""
        return self.runner.which(self.php_bin) is not None

    def version(self) -> Version:
        """Return the interpreter version."""
        result = self.runner.run([self.php_bin, "-r", _VERSION_SCRIPT])
        if not result.ok:
            raise PhpError(result.args, result.returncode, result.output)
        return parse_php_version(result.stdout)

    def meets(self, minimum: str) -> tuple[bool, Version]:
        """Return whether the interpreter satisfies *minimum*, plus its version."""
        try:
            required = Version(minimum)
        except InvalidVersion as exc:
            raise PreconditionFailure(f"Invalid php_min_version: {minimum!r}.") from exc
        current = self.version()
        return current >= required, current

    def modules(self) -> set[str]:
        """Return loaded module names from ``php -m``, lowercased."""
        result = self.runner.run([self.php_bin, "-m"])
        if not result.ok:
            raise PhpError(result.args, result.returncode, result.output)
        names: set[str] = set()
        for line in result.stdout.splitlines():
            entry = line.strip()
            if entry and not entry.startswith("["):
                names.add(entry.lower())
        return names

    def install_extension(self, extension: str) -> CommandResult:
        """Try ``apt-get install -y php-<extension>``; never raises."""
        return self.runner.run(["apt-get", "install", "-y", f"php-{extension}"], sudo=True)

    def lint(self, path: Path) -> CommandResult:
        """Run ``php -l`` on *path*."""
        return self.runner.run([self.php_bin, "-l", str(path)])

    def run_script_as(self, user: str, script: Path) -> CommandResult:
        """Execute *script* as *user* via ``sudo -u``."""
        return self.runner.run(["sudo", "-u", user, self.php_bin, str(script)])


__all__ = ["PhpError", "PhpProvider", "parse_php_version"]
