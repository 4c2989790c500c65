"""Shared fixtures and fakes for the mmdeploy test suite."""

from __future__ import annotations

import io
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from rich.console import Console

from mmdeploy.config import ConfigDocument, GlobalConfig
from mmdeploy.effective import EffectiveConfig
from mmdeploy.fileops import LocalFileOps
from mmdeploy.pipeline import PipelineContext
from mmdeploy.reporting import ConflictPolicy, StatusReporter
from mmdeploy.runner import CommandResult
from mmdeploy.templates import TemplateEngine


@dataclass(frozen=True)
class Call:
    """One command recorded by :class:`FakeRunner`."""

    args: tuple[str, ...]
    sudo: bool
    input_text: str | None


class FakeRunner:
    """Command runner double returning scripted results by command prefix."""

    def __init__(self, installed: Sequence[str] = ()) -> None:
        """Initialise the runner with the executables ``which`` reports."""
        self.calls: list[Call] = []
        self.installed = set(installed)
        self._scripts: list[tuple[tuple[str, ...], int, str, str]] = []

    def script(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Return the given result for commands starting with *prefix*; newest wins."""
        self._scripts.append((prefix, returncode, stdout, stderr))

    def run(
        self,
        args: Sequence[str],
        *,
        sudo: bool = False,
        input_text: str | None = None,
        capture: bool = True,
    ) -> CommandResult:
        command = tuple(args)
        self.calls.append(Call(command, sudo, input_text))
        for prefix, returncode, stdout, stderr in reversed(self._scripts):
            if command[: len(prefix)] == prefix:
                return CommandResult(command, returncode, stdout, stderr)
        return CommandResult(command, 0, "", "")

    def which(self, name: str) -> str | None:
        return f"/usr/bin/{name}" if name in self.installed else None

    @property
    def commands(self) -> list[tuple[str, ...]]:
        """Return the argument tuples of every recorded call."""
        return [call.args for call in self.calls]

    def ran(self, *prefix: str) -> bool:
        """Return True when a command starting with *prefix* was executed."""
        return any(args[: len(prefix)] == prefix for args in self.commands)


@dataclass
class ScriptedPrompter:
    """Prompter double with fixed answers that records every question."""

    confirm_answer: bool = False
    answers: dict[str, str] = field(default_factory=dict)
    questions: list[str] = field(default_factory=list)

    def confirm(self, question: str, *, default: bool = False) -> bool:
        self.questions.append(question)
        return self.confirm_answer

    def ask(self, question: str, *, default: str = "", secret: bool = False) -> str:
        self.questions.append(question)
        return self.answers.get(question, default)


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return a runner where PHP and Apache are installed and report PHP 8.1."""
    runner = FakeRunner(installed=("php", "apache2", "apache2ctl", "certbot"))
    runner.script("php", "-r", stdout="8.1.2-1ubuntu2.14")
    runner.script("php", "-m", stdout="[PHP Modules]\ncurl\njson\nmbstring\n")
    return runner


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """Create an application source tree with the required entry points."""
    source = tmp_path / "meeting_meter"
    source.mkdir()
    (source / "index.php").write_text("<?php echo 'index';\n", encoding="utf-8")
    (source / "meeting_meter_advanced.php").write_text("<?php echo 'advanced';\n", encoding="utf-8")
    (source / "demo.php").write_text("<?php echo 'demo';\n", encoding="utf-8")
    (source / "README.md").write_text("# Meeting Meter\n", encoding="utf-8")
    return source


@pytest.fixture
def base_values(tmp_path: Path, source_tree: Path) -> dict[str, str]:
    """Return flattened configuration values rooted under *tmp_path*."""
    return {
        "domain": "a.example.com",
        "app_name": "meeting_meter",
        "app_dir": "meeting_meter",
        "web_root": str(tmp_path / "www"),
        "source_dir": str(source_tree),
        "apache_config_file": str(tmp_path / "apache" / "sites-available" / "meeting-meter.conf"),
        "apache_site_name": "meeting-meter",
        "log_dir": str(tmp_path / "log"),
        "web_user": "www-data",
        "web_group": "www-data",
    }


@pytest.fixture
def make_effective(tmp_path: Path, base_values: dict[str, str]) -> Callable[..., EffectiveConfig]:
    """Return a factory building an :class:`EffectiveConfig` with overrides."""

    def _factory(**overrides: str) -> EffectiveConfig:
        values = {**base_values, **overrides}
        return EffectiveConfig.from_values(values, base_dir=tmp_path)

    return _factory


@pytest.fixture
def make_global_config(tmp_path: Path) -> Callable[..., GlobalConfig]:
    """Return a factory building a :class:`GlobalConfig` from section mappings."""

    def _factory(sections: dict[str, dict[str, str]]) -> GlobalConfig:
        path = tmp_path / "deploy.ini"
        return GlobalConfig(path=path, document=ConfigDocument(sections=sections, path=path))

    return _factory


@pytest.fixture
def console_output() -> io.StringIO:
    """Buffer receiving everything the test console prints."""
    return io.StringIO()


@pytest.fixture
def reporter(console_output: io.StringIO) -> StatusReporter:
    """Return a reporter printing into :func:`console_output`."""
    return StatusReporter(Console(file=console_output, width=200, color_system=None))


@pytest.fixture
def make_context(
    make_effective: Callable[..., EffectiveConfig],
    fake_runner: FakeRunner,
    reporter: StatusReporter,
) -> Callable[..., PipelineContext]:
    """Return a factory building a pipeline context over local files."""

    def _factory(
        effective: EffectiveConfig | None = None,
        *,
        policy: ConflictPolicy = ConflictPolicy.ASK,
        prompter: ScriptedPrompter | None = None,
        euid: int = 1000,
    ) -> PipelineContext:
        return PipelineContext(
            effective=effective or make_effective(),
            runner=fake_runner,
            files=LocalFileOps(),
            templates=TemplateEngine.with_overrides(None),
            reporter=reporter,
            prompter=prompter or ScriptedPrompter(),
            policy=policy,
            api_key="demo",
            euid=lambda: euid,
        )

    return _factory
