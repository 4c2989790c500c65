"""Tests for code-only updates with rollback."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from conftest import FakeRunner, ScriptedPrompter
from mmdeploy.effective import EffectiveConfig
from mmdeploy.errors import (
    ExitCode,
    ExternalCommandFailure,
    PreconditionFailure,
    ValidationFailure,
)
from mmdeploy.fileops import LocalFileOps
from mmdeploy.pipeline import PipelineContext
from mmdeploy.updater import CodeOnlyUpdater

ContextFactory = Callable[..., PipelineContext]

PREVIOUS = {
    "index.php": "<?php echo 'previous index';\n",
    "meeting_meter_advanced.php": "<?php echo 'previous advanced';\n",
    "demo.php": "<?php echo 'previous demo';\n",
    "config.php": "<?php define('APP_NAME', 'kept');\n",
}


@pytest.fixture
def installed(make_effective: Callable[..., EffectiveConfig], tmp_path: Path) -> EffectiveConfig:
    """An effective config whose app directory holds a previous deployment."""
    effective = make_effective(enable_backup="true", backup_dir=str(tmp_path / "backups"))
    effective.app_path.mkdir(parents=True)
    for name, text in PREVIOUS.items():
        (effective.app_path / name).write_text(text, encoding="utf-8")
    return effective


def _snapshot_tree(path: Path) -> dict[str, str]:
    return {
        str(item.relative_to(path)): item.read_text(encoding="utf-8")
        for item in sorted(path.rglob("*"))
        if item.is_file()
    }


def test_update_replaces_files_and_keeps_backup(
    make_context: ContextFactory,
    installed: EffectiveConfig,
) -> None:
    ctx = make_context(installed)

    result = CodeOnlyUpdater(ctx).run()

    app_path = installed.app_path
    assert (app_path / "index.php").read_text(encoding="utf-8") == "<?php echo 'index';\n"
    assert (app_path / "config.php").read_text(encoding="utf-8") == PREVIOUS["config.php"]
    assert result.snapshot is not None
    assert result.snapshot_deleted is False
    assert (result.snapshot.path / "index.php").read_text(encoding="utf-8") == PREVIOUS["index.php"]
    assert "Delete backup files?" in ctx.prompter.questions


def test_update_deletes_backup_when_confirmed(
    make_context: ContextFactory,
    installed: EffectiveConfig,
) -> None:
    ctx = make_context(installed, prompter=ScriptedPrompter(confirm_answer=True))

    result = CodeOnlyUpdater(ctx).run()

    assert result.snapshot_deleted is True
    assert result.snapshot is not None
    assert not result.snapshot.path.exists()


def test_update_compresses_kept_backup(
    make_context: ContextFactory,
    make_effective: Callable[..., EffectiveConfig],
    installed: EffectiveConfig,
    fake_runner: FakeRunner,
) -> None:
    effective = make_effective(
        enable_backup="true",
        backup_dir=installed.backup_dir,
        backup_compress="true",
    )
    ctx = make_context(effective)

    result = CodeOnlyUpdater(ctx).run()

    assert result.snapshot is not None and result.snapshot.compressed is True
    assert fake_runner.ran("tar", "-czf", str(result.snapshot.path))


def test_lint_failure_rolls_back_byte_identical(
    make_context: ContextFactory,
    installed: EffectiveConfig,
    fake_runner: FakeRunner,
) -> None:
    before = _snapshot_tree(installed.app_path)
    fake_runner.script(
        "php",
        "-l",
        str(installed.app_path / "demo.php"),
        returncode=255,
        stdout="PHP Parse error: syntax error in demo.php on line 1",
    )
    ctx = make_context(installed)

    with pytest.raises(ValidationFailure) as excinfo:
        CodeOnlyUpdater(ctx).run()

    assert excinfo.value.exit_code == ExitCode.VALIDATION
    assert "demo.php" in str(excinfo.value)
    assert "rolled back" in str(excinfo.value)
    assert _snapshot_tree(installed.app_path) == before
    assert "Delete backup files?" not in ctx.prompter.questions


def test_lint_failure_without_backup_leaves_new_files(
    make_context: ContextFactory,
    make_effective: Callable[..., EffectiveConfig],
    installed: EffectiveConfig,
    fake_runner: FakeRunner,
) -> None:
    fake_runner.script("php", "-l", returncode=255, stdout="PHP Parse error")
    ctx = make_context(make_effective())

    with pytest.raises(ValidationFailure, match="no backup available"):
        CodeOnlyUpdater(ctx).run()

    assert (installed.app_path / "index.php").read_text(encoding="utf-8") == "<?php echo 'index';\n"
    assert "Backups are disabled; a failed update cannot be rolled back" in ctx.reporter.warnings


def test_update_requires_existing_installation(make_context: ContextFactory) -> None:
    with pytest.raises(PreconditionFailure, match="Run a full deployment first"):
        CodeOnlyUpdater(make_context()).run()


def test_update_skips_configtest_when_apache_inactive(
    make_context: ContextFactory,
    installed: EffectiveConfig,
    fake_runner: FakeRunner,
) -> None:
    fake_runner.script("systemctl", "is-active", returncode=3)
    ctx = make_context(installed)

    CodeOnlyUpdater(ctx).run()

    assert not fake_runner.ran("apache2ctl", "configtest")
    assert "Apache is not running, skipping configuration test" in ctx.reporter.warnings


def test_update_refuses_to_run_as_root(
    make_context: ContextFactory,
    installed: EffectiveConfig,
    fake_runner: FakeRunner,
) -> None:
    before = _snapshot_tree(installed.app_path)
    ctx = make_context(installed, euid=0)

    with pytest.raises(PreconditionFailure, match="should not be run as root"):
        CodeOnlyUpdater(ctx).run()

    assert _snapshot_tree(installed.app_path) == before
    assert not Path(installed.backup_dir).exists()
    assert fake_runner.commands == []


def test_update_handles_latin1_files_in_app_dir(
    make_context: ContextFactory,
    installed: EffectiveConfig,
    fake_runner: FakeRunner,
) -> None:
    legacy = b"<?php // caf\xe9\n"
    (installed.app_path / "index.php").write_bytes(legacy)
    before = {item.name: item.read_bytes() for item in installed.app_path.iterdir()}
    fake_runner.script("php", "-l", str(installed.app_path / "demo.php"), returncode=255)
    ctx = make_context(installed)

    with pytest.raises(ValidationFailure, match="rolled back"):
        CodeOnlyUpdater(ctx).run()

    token = next(t for t in ctx.journal.tokens if t.path.name == "index.php")
    assert token.content == legacy
    assert {item.name: item.read_bytes() for item in installed.app_path.iterdir()} == before


def _fail_on_copy(error: Exception) -> LocalFileOps:
    class FailingCopy(LocalFileOps):
        def copy_file(self, source: Path, destination: Path) -> None:
            if destination.name == "meeting_meter_advanced.php":
                raise error
            super().copy_file(source, destination)

    return FailingCopy()


@pytest.mark.parametrize(
    ("error", "exit_code"),
    [
        (ExternalCommandFailure(["cp", "-p"], 1, "Permission denied"), ExitCode.PROVIDER),
        (OSError("disk full"), None),
    ],
)
def test_sync_failure_rolls_back_and_keeps_original_error(
    make_context: ContextFactory,
    installed: EffectiveConfig,
    error: Exception,
    exit_code: ExitCode | None,
) -> None:
    before = _snapshot_tree(installed.app_path)
    ctx = make_context(installed)
    ctx.files = _fail_on_copy(error)

    with pytest.raises(type(error)) as excinfo:
        CodeOnlyUpdater(ctx).run()

    assert excinfo.value is error
    if exit_code is not None:
        assert excinfo.value.exit_code == exit_code
    # demo.php and index.php were already replaced before the failure.
    assert _snapshot_tree(installed.app_path) == before
    assert "Rolled back to previous version from" in ctx.reporter.warnings[-1]


def test_empty_app_dir_rolls_back_to_empty(
    make_context: ContextFactory,
    make_effective: Callable[..., EffectiveConfig],
    fake_runner: FakeRunner,
    tmp_path: Path,
) -> None:
    effective = make_effective(enable_backup="true", backup_dir=str(tmp_path / "backups"))
    effective.app_path.mkdir(parents=True)
    fake_runner.script("php", "-l", returncode=255, stdout="PHP Parse error")
    ctx = make_context(effective)

    with pytest.raises(ValidationFailure, match="rolled back"):
        CodeOnlyUpdater(ctx).run()

    assert list(effective.app_path.iterdir()) == []
