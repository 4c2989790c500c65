"""Tests for application snapshots."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from conftest import FakeRunner
from mmdeploy.backups import SnapshotStore, parse_snapshot
from mmdeploy.errors import BackupError, ExternalCommandFailure
from mmdeploy.fileops import LocalFileOps


@pytest.fixture
def app_dir(tmp_path: Path) -> Path:
    app = tmp_path / "www" / "app"
    (app / "assets").mkdir(parents=True)
    (app / "index.php").write_text("<?php echo 1;\n", encoding="utf-8")
    (app / ".htaccess").write_text("Options -Indexes\n", encoding="utf-8")
    (app / "assets" / "app.css").write_text("body {}\n", encoding="utf-8")
    return app


@pytest.fixture
def store(tmp_path: Path) -> SnapshotStore:
    return SnapshotStore(tmp_path / "backups", LocalFileOps(), FakeRunner())


def test_create_copies_tree_with_timestamp_identifier(store: SnapshotStore, app_dir: Path) -> None:
    snapshot = store.create(app_dir, now=datetime(2024, 3, 2, 10, 15, 30, 999))

    assert snapshot.identifier == "20240302_101530"
    assert (snapshot.path / "index.php").read_text(encoding="utf-8") == "<?php echo 1;\n"
    assert (snapshot.path / ".htaccess").is_file()
    assert (snapshot.path / "assets" / "app.css").is_file()


def test_create_same_second_gets_unique_identifier(store: SnapshotStore, app_dir: Path) -> None:
    moment = datetime(2024, 3, 2, 10, 15, 30)
    first = store.create(app_dir, now=moment)
    second = store.create(app_dir, now=moment)

    assert first.identifier == "20240302_101530"
    assert second.identifier == "20240302_101530-2"
    assert [item.identifier for item in store.list_snapshots()] == [
        "20240302_101530",
        "20240302_101530-2",
    ]


def test_create_missing_source_raises(store: SnapshotStore, tmp_path: Path) -> None:
    with pytest.raises(BackupError):
        store.create(tmp_path / "absent")


def test_create_empty_source_yields_empty_snapshot(store: SnapshotStore, tmp_path: Path) -> None:
    empty = tmp_path / "www" / "empty"
    empty.mkdir(parents=True)

    snapshot = store.create(empty)

    assert snapshot.path.is_dir()
    assert list(snapshot.path.iterdir()) == []
    (empty / "index.php").write_text("<?php\n", encoding="utf-8")
    store.restore(snapshot, empty)
    assert list(empty.iterdir()) == []


def test_restore_replaces_target_contents(store: SnapshotStore, app_dir: Path) -> None:
    snapshot = store.create(app_dir)
    (app_dir / "index.php").write_text("<?php broken(\n", encoding="utf-8")
    (app_dir / "new.php").write_text("<?php\n", encoding="utf-8")

    store.restore(snapshot, app_dir)

    assert (app_dir / "index.php").read_text(encoding="utf-8") == "<?php echo 1;\n"
    assert not (app_dir / "new.php").exists()
    assert (app_dir / "assets" / "app.css").is_file()


def test_compress_runs_tar_and_drops_directory(tmp_path: Path, app_dir: Path) -> None:
    runner = FakeRunner()
    store = SnapshotStore(tmp_path / "backups", LocalFileOps(), runner)
    snapshot = store.create(app_dir, now=datetime(2024, 1, 1, 0, 0, 0))

    archived = store.compress(snapshot)

    assert archived.compressed is True
    assert archived.path == tmp_path / "backups" / "20240101_000000.tar.gz"
    assert runner.calls[-1].sudo is True
    assert runner.commands[-1] == (
        "tar",
        "-czf",
        str(archived.path),
        "-C",
        str(tmp_path / "backups"),
        "20240101_000000",
    )
    assert not snapshot.path.exists()


def test_compress_failure_keeps_directory(tmp_path: Path, app_dir: Path) -> None:
    runner = FakeRunner()
    runner.script("tar", returncode=2, stderr="tar: write error")
    store = SnapshotStore(tmp_path / "backups", LocalFileOps(), runner)
    snapshot = store.create(app_dir)

    with pytest.raises(ExternalCommandFailure):
        store.compress(snapshot)
    assert snapshot.path.is_dir()


def test_prune_expired_removes_only_old_snapshots(store: SnapshotStore, app_dir: Path) -> None:
    old = store.create(app_dir, now=datetime(2024, 1, 1, 0, 0, 0))
    recent = store.create(app_dir, now=datetime(2024, 1, 20, 0, 0, 0))
    archive = store.root / "20231201_000000.tar.gz"
    archive.write_bytes(b"")

    removed = store.prune_expired(7, now=datetime(2024, 1, 21, 0, 0, 0))

    assert {item.identifier for item in removed} == {old.identifier, "20231201_000000"}
    assert not old.path.exists()
    assert not archive.exists()
    assert recent.path.is_dir()
    assert store.prune_expired(None) == []


def test_parse_snapshot_ignores_unrelated_entries(tmp_path: Path) -> None:
    (tmp_path / "notes").mkdir()
    (tmp_path / "20240101_000000.tar.gz").mkdir()
    (tmp_path / "20240101_000001").mkdir()

    assert parse_snapshot(tmp_path / "notes") is None
    # A directory wearing the archive suffix is not an archive.
    assert parse_snapshot(tmp_path / "20240101_000000.tar.gz") is None
    parsed = parse_snapshot(tmp_path / "20240101_000001")
    assert parsed is not None
    assert parsed.created_at == datetime(2024, 1, 1, 0, 0, 1)
