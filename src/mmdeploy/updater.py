"""Code-only redeploys with syntax validation and rollback."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .backups import BackupSnapshot, SnapshotStore
from .effective import REQUIRED_SOURCE_FILES
from .errors import PreconditionFailure, ValidationFailure
from .pipeline import PipelineContext, check_sources, fix_permissions, sync_sources


@dataclass
class UpdateResult:
    """What a successful update left behind."""

    files: list[Path] = field(default_factory=list)
    snapshot: BackupSnapshot | None = None
    snapshot_deleted: bool = False
    pruned: list[BackupSnapshot] = field(default_factory=list)


class CodeOnlyUpdater:
    """Replace application files in place, restoring the snapshot on failure."""

    def __init__(self, ctx: PipelineContext) -> None:
        self.ctx = ctx
        effective = ctx.effective
        self.store: SnapshotStore | None = None
        if effective.enable_backup and effective.backup_dir:
            self.store = SnapshotStore(Path(effective.backup_dir), ctx.files, ctx.runner)

    def run(self) -> UpdateResult:
        """Back up, sync, lint, then keep or roll back."""
        ctx = self.ctx
        effective = ctx.effective
        reporter = ctx.reporter
        app_path = effective.app_path
        if ctx.euid() == 0:
            raise PreconditionFailure(
                "This command should not be run as root. It uses sudo when needed."
            )
        if not app_path.is_dir():
            raise PreconditionFailure(
                f"Application directory not found: {app_path}. Run a full deployment first."
            )
        check_sources(effective.source_path)

        result = UpdateResult()
        if self.store is not None:
            result.snapshot = self.store.create(app_path)
            reporter.info(f"Backup created at {result.snapshot.path}")
        else:
            reporter.warning("Backups are disabled; a failed update cannot be rolled back")

        try:
            result.files = sync_sources(effective, ctx.files, reporter, ctx.journal)
            fix_permissions(effective, ctx.files, result.files)
            failures = self._lint()
        except Exception:
            # The original error keeps its exit code once the snapshot is back.
            self._rollback(result.snapshot)
            raise

        if failures:
            restored = self._rollback(result.snapshot)
            detail = (
                "rolled back to the previous version"
                if restored
                else "no backup available; updated files were left in place"
            )
            raise ValidationFailure(
                f"PHP syntax errors detected in {', '.join(failures)}; {detail}. "
                "Please fix syntax errors and try again."
            )

        self._check_web_server()
        self._finish_snapshot(result)
        return result

    def _lint(self) -> list[str]:
        php = self.ctx.tools.php
        failures: list[str] = []
        for name in REQUIRED_SOURCE_FILES:
            lint = php.lint(self.ctx.effective.app_path / name)
            if lint.ok:
                self.ctx.reporter.info(f"{name} syntax OK")
            else:
                self.ctx.reporter.error(f"{name} syntax error: {lint.output}")
                failures.append(name)
        return failures

    def _rollback(self, snapshot: BackupSnapshot | None) -> bool:
        if snapshot is None or self.store is None:
            return False
        self.ctx.reporter.error("Rolling back to backup...")
        self.store.restore(snapshot, self.ctx.effective.app_path)
        self.ctx.reporter.warning(f"Rolled back to previous version from {snapshot.path}")
        return True

    def _check_web_server(self) -> None:
        apache = self.ctx.tools.apache
        if not apache.is_active():
            self.ctx.reporter.warning("Apache is not running, skipping configuration test")
            return
        if apache.configtest_result().ok:
            self.ctx.reporter.info("Apache configuration OK")
        else:
            self.ctx.reporter.warning("Apache configuration has issues (but continuing)")

    def _finish_snapshot(self, result: UpdateResult) -> None:
        snapshot = result.snapshot
        if snapshot is None or self.store is None:
            return
        effective = self.ctx.effective
        if self.ctx.prompter.confirm("Delete backup files?", default=False):
            self.store.delete(snapshot)
            result.snapshot_deleted = True
            self.ctx.reporter.info("Backup cleaned up")
        else:
            if effective.backup_compress:
                result.snapshot = snapshot = self.store.compress(snapshot)
            self.ctx.reporter.info(f"Backup preserved at: {snapshot.path}")
        result.pruned = self.store.prune_expired(effective.backup_retention_days)
        for expired in result.pruned:
            self.ctx.reporter.info(f"Pruned expired backup {expired.identifier}")


__all__ = ["CodeOnlyUpdater", "UpdateResult"]
