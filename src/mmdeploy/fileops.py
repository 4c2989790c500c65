"""File-system primitives used by the deployment stages.

mmdeploy runs as a regular operator and escalates privileges per operation,
so the production implementation (:class:`SudoFileOps`) performs every
mutation through ``sudo`` via the command runner. :class:`LocalFileOps`
performs the same operations in-process and is used when the target paths
are writable by the invoking user (tests, staging trees).
"""
from __future__ import annotations

import base64
import binascii
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import ExternalCommandFailure
from .runner import CommandRunner, check


class FileOps(Protocol):
    """Mutating file operations the pipeline relies on."""

    def mkdir(self, path: Path, *, mode: int, owner: str | None = None, group: str | None = None) -> None:
        """Create *path* (and parents) with *mode* and optional ownership."""

    def copy_file(self, source: Path, destination: Path) -> None:
        """Copy *source* to *destination*, preserving timestamps."""

    def chmod(self, path: Path, mode: int) -> None:
        """Set permission bits on *path*."""

    def chown(self, path: Path, owner: str, group: str, *, recursive: bool = False) -> None:
        """Set ownership on *path*."""

    def write_text(
        self,
        path: Path,
        text: str,
        *,
        mode: int,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        """Atomically replace *path* with *text*."""

    def write_bytes(
        self,
        path: Path,
        data: bytes,
        *,
        mode: int,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        """Atomically replace *path* with the raw *data*."""

    def append_text(self, path: Path, text: str) -> None:
        """Append *text* to *path*, creating it when missing."""

    def remove(self, path: Path) -> None:
        """Delete the file *path* if it exists."""

    def remove_tree(self, path: Path) -> None:
        """Delete the directory tree *path* if it exists."""

    def copy_tree(self, source: Path, destination: Path) -> None:
        """Copy the contents of directory *source* into *destination*."""

    def clear_dir(self, path: Path) -> None:
        """Delete every entry inside *path*, keeping the directory itself."""

    def read_file(self, path: Path) -> tuple[bytes, int] | None:
        """Return the raw content and permission bits of *path*, or None when absent."""


@dataclass(slots=True)
class SudoFileOps:
    """File operations executed through ``sudo`` using core utilities."""

    runner: CommandRunner

    def _run(self, *args: str, input_text: str | None = None) -> None:
        check(self.runner.run(list(args), sudo=True, input_text=input_text))

    def mkdir(self, path: Path, *, mode: int, owner: str | None = None, group: str | None = None) -> None:
        """Create *path* (and parents) with *mode* and optional ownership."""
        self._run("mkdir", "-p", str(path))
        if owner is not None:
            self.chown(path, owner, group or owner)
        self.chmod(path, mode)

    def copy_file(self, source: Path, destination: Path) -> None:
        """Copy *source* to *destination*, preserving timestamps."""
        self._run("cp", "-p", str(source), str(destination))

    def chmod(self, path: Path, mode: int) -> None:
        """Set permission bits on *path*."""
        self._run("chmod", f"{mode:o}", str(path))

    def chown(self, path: Path, owner: str, group: str, *, recursive: bool = False) -> None:
        """Set ownership on *path*."""
        args = ["chown"]
        if recursive:
            args.append("-R")
        self._run(*args, f"{owner}:{group}", str(path))

    def write_text(
        self,
        path: Path,
        text: str,
        *,
        mode: int,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        """Stage *text* in a private temp file and ``install`` it into place."""
        self.write_bytes(path, text.encode("utf-8"), mode=mode, owner=owner, group=group)

    def write_bytes(
        self,
        path: Path,
        data: bytes,
        *,
        mode: int,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        """Stage *data* in a private temp file and ``install`` it into place."""
        tmp_fd, tmp_name = tempfile.mkstemp(prefix="mmdeploy-")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(data)
            args = ["install", "-m", f"{mode:o}"]
            if owner is not None:
                args.extend(["-o", owner, "-g", group or owner])
            args.extend([str(tmp_path), str(path)])
            self._run(*args)
        finally:
            tmp_path.unlink(missing_ok=True)

    def append_text(self, path: Path, text: str) -> None:
        """Append *text* to *path* via ``tee -a``."""
        result = self.runner.run(["tee", "-a", str(path)], sudo=True, input_text=text)
        check(result)

    def remove(self, path: Path) -> None:
        """Delete the file *path* if it exists."""
        self._run("rm", "-f", str(path))

    def remove_tree(self, path: Path) -> None:
        """Delete the directory tree *path* if it exists."""
        if str(path).strip() in {"", "/"}:
            raise ExternalCommandFailure(["rm", "-rf", str(path)], 1, "refusing to remove /")
        self._run("rm", "-rf", str(path))

    def copy_tree(self, source: Path, destination: Path) -> None:
        """Copy the contents of *source* (dotfiles included) into *destination*."""
        self._run("mkdir", "-p", str(destination))
        self._run("cp", "-a", f"{source}/.", str(destination))

    def clear_dir(self, path: Path) -> None:
        """Delete every entry inside *path*, keeping the directory itself."""
        self._run("find", str(path), "-mindepth", "1", "-delete")

    def read_file(self, path: Path) -> tuple[bytes, int] | None:
        """Return the raw content and permission bits of *path*, or None when absent.

        The content travels base64-encoded so files in any encoding survive
        the text-mode runner.
        """
        stat = self.runner.run(["stat", "-c", "%a", str(path)], sudo=True)
        if not stat.ok:
            return None
        encoded = check(self.runner.run(["base64", "-w0", str(path)], sudo=True))
        try:
            content = base64.b64decode(encoded.stdout.strip(), validate=True)
        except binascii.Error as exc:
            raise ExternalCommandFailure(
                ["base64", "-w0", str(path)], 0, f"unreadable output: {exc}"
            ) from exc
        return content, int(stat.stdout.strip(), 8)


@dataclass(slots=True)
class LocalFileOps:
    """In-process file operations for paths the current user can write."""

    manage_ownership: bool = False

    def mkdir(self, path: Path, *, mode: int, owner: str | None = None, group: str | None = None) -> None:
        """Create *path* (and parents) with *mode* and optional ownership."""
        path.mkdir(parents=True, exist_ok=True)
        if owner is not None:
            self.chown(path, owner, group or owner)
        os.chmod(path, mode)

    def copy_file(self, source: Path, destination: Path) -> None:
        """Copy *source* to *destination*, preserving timestamps."""
        shutil.copy2(source, destination)

    def chmod(self, path: Path, mode: int) -> None:
        """Set permission bits on *path*."""
        os.chmod(path, mode)

    def chown(self, path: Path, owner: str, group: str, *, recursive: bool = False) -> None:
        """Set ownership on *path* when ownership management is enabled."""
        if not self.manage_ownership:
            return
        shutil.chown(path, owner, group)
        if recursive and path.is_dir():
            for child in path.rglob("*"):
                shutil.chown(child, owner, group)

    def write_text(
        self,
        path: Path,
        text: str,
        *,
        mode: int,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        """Atomically replace *path* with *text*."""
        self.write_bytes(path, text.encode("utf-8"), mode=mode, owner=owner, group=group)

    def write_bytes(
        self,
        path: Path,
        data: bytes,
        *,
        mode: int,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        """Atomically replace *path* with the raw *data*."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(data)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)
        if owner is not None:
            self.chown(path, owner, group or owner)

    def append_text(self, path: Path, text: str) -> None:
        """Append *text* to *path*, creating it when missing."""
        with path.open("a", encoding="utf-8") as handle:
            handle.write(text)

    def remove(self, path: Path) -> None:
        """Delete the file *path* if it exists."""
        path.unlink(missing_ok=True)

    def remove_tree(self, path: Path) -> None:
        """Delete the directory tree *path* if it exists."""
        if path.is_dir():
            shutil.rmtree(path)

    def copy_tree(self, source: Path, destination: Path) -> None:
        """Copy the contents of *source* into *destination*."""
        shutil.copytree(source, destination, dirs_exist_ok=True)

    def clear_dir(self, path: Path) -> None:
        """Delete every entry inside *path*, keeping the directory itself."""
        for child in path.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()

    def read_file(self, path: Path) -> tuple[bytes, int] | None:
        """Return the raw content and permission bits of *path*, or None when absent."""
        if not path.is_file():
            return None
        return path.read_bytes(), path.stat().st_mode & 0o777


__all__ = ["FileOps", "LocalFileOps", "SudoFileOps"]
