"""Filesystem primitives confined to a single project root.

Every path argument is interpreted relative to the project root and
must resolve inside it. Methods return plain dict payloads for the
tool dispatcher and raise ValidationError / NotFoundError for caller
mistakes; genuine I/O failures surface as OSError.
"""
from __future__ import annotations

import logging
import os
import platform
import re
import shutil
import socket
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from basebrain.engine.errors import NotFoundError, ValidationError
from basebrain.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_DEPTH = 10


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _line_delta(old: str, new: str) -> tuple[int, int]:
    """Count lines present only in *new* and only in *old*."""
    old_lines = old.split("\n")
    new_lines = new.split("\n")
    old_set = set(old_lines)
    new_set = set(new_lines)
    added = sum(1 for line in new_lines if line not in old_set)
    removed = sum(1 for line in old_lines if line not in new_set)
    return added, removed


class ProjectFilesystem:
    """Path-sandboxed file operations for one project directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()

    # ── Path confinement ──

    def resolve(self, path: str) -> Path:
        """Resolve *path* against the root, refusing anything outside it."""
        if not isinstance(path, str) or not path.strip():
            raise ValidationError("Path must be a non-empty string", path=path)
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        try:
            resolved.relative_to(self.root)
        except ValueError:
            raise ValidationError("Path is outside project directory", path=path) from None
        return resolved

    def relative(self, absolute: Path) -> str:
        rel = absolute.relative_to(self.root).as_posix()
        return rel or "."

    @staticmethod
    def _entry(path: Path, rel: str) -> dict[str, Any]:
        st = path.stat()
        is_dir = path.is_dir()
        return {
            "name": path.name,
            "path": rel,
            "type": "folder" if is_dir else "file",
            "size": None if is_dir else st.st_size,
            "modified": _iso(st.st_mtime),
        }

    # ── Files ──

    def read_text(self, path: str) -> str:
        """Return the exact text of a file. Raises NotFoundError if absent."""
        target = self.resolve(path)
        if not target.exists():
            raise NotFoundError("File", path)
        if target.is_dir():
            raise ValidationError("Path is a directory, not a file", path=path)
        with open(target, encoding="utf-8", errors="replace", newline="") as f:
            return f.read()

    def read_file(self, path: str) -> dict[str, Any]:
        content = self.read_text(path)
        st = self.resolve(path).stat()
        return {
            "content": content,
            "path": path,
            "size": st.st_size,
            "modified": _iso(st.st_mtime),
        }

    def write_file(self, path: str, content: Any) -> dict[str, Any]:
        target = self.resolve(path)
        if target.is_dir():
            raise ValidationError("Path is a directory, not a file", path=path)
        if not isinstance(content, str):
            content = "" if content is None else str(content)

        is_new = not target.exists()
        if is_new:
            added, removed = len(content.split("\n")), 0
        else:
            with open(target, encoding="utf-8", errors="replace", newline="") as f:
                added, removed = _line_delta(f.read(), content)

        atomic_write_text(target, content)
        logger.debug("write_file %s (%d chars, new=%s)", path, len(content), is_new)
        return {
            "path": path,
            "message": "File created successfully" if is_new else "File updated successfully",
            "linesAdded": added,
            "linesRemoved": removed,
            "isNewFile": is_new,
        }

    def append_file(self, path: str, content: str) -> dict[str, Any]:
        target = self.resolve(path)
        if target.is_dir():
            raise ValidationError("Path is a directory, not a file", path=path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "a", encoding="utf-8", newline="") as f:
            f.write(content)
        return {"path": path, "message": "Content appended successfully"}

    def delete_file(self, path: str) -> dict[str, Any]:
        target = self.resolve(path)
        if not target.exists():
            raise NotFoundError("File", path)
        if target.is_dir():
            raise ValidationError("Path is a directory. Use delete_folder instead", path=path)
        target.unlink()
        return {"path": path, "message": "File deleted successfully"}

    def copy_file(self, source: str, destination: str) -> dict[str, Any]:
        src = self.resolve(source)
        dest = self.resolve(destination)
        if not src.is_file():
            raise NotFoundError("Source file", source)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)
        return {
            "source": source,
            "destination": destination,
            "message": "File copied successfully",
        }

    def move_file(self, source: str, destination: str) -> dict[str, Any]:
        src = self.resolve(source)
        dest = self.resolve(destination)
        if not src.exists():
            raise NotFoundError("Source file", source)
        dest.parent.mkdir(parents=True, exist_ok=True)
        os.replace(src, dest)
        return {
            "source": source,
            "destination": destination,
            "message": "File moved successfully",
        }

    # ── Folders ──

    def create_folder(self, path: str) -> dict[str, Any]:
        target = self.resolve(path)
        if target.exists():
            raise ValidationError(f"Folder already exists: {path}", path=path)
        target.mkdir(parents=True)
        return {"path": path, "message": "Folder created successfully"}

    def delete_folder(self, path: str) -> dict[str, Any]:
        target = self.resolve(path)
        if target == self.root:
            raise ValidationError("Cannot delete the project root folder", path=path)
        if not target.exists():
            raise NotFoundError("Folder", path)
        if not target.is_dir():
            raise ValidationError("Path is a file, not a folder. Use delete_file instead", path=path)
        shutil.rmtree(target)
        return {"path": path, "message": "Folder deleted successfully"}

    def list_folder(self, path: str = ".", recursive: bool = False) -> dict[str, Any]:
        target = self.resolve(path)
        if not target.exists():
            raise NotFoundError("Folder", path)
        if not target.is_dir():
            raise ValidationError("Path is a file, not a folder", path=path)
        items = self._list_dir(target, recursive)
        return {"path": path, "items": items, "count": len(items)}

    def _list_dir(self, directory: Path, recursive: bool) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for child in sorted(directory.iterdir(), key=lambda p: p.name):
            try:
                item = self._entry(child, self.relative(child))
            except OSError:
                # Dangling symlink.
                continue
            if recursive and item["type"] == "folder":
                item["children"] = self._list_dir(child, recursive)
            items.append(item)
        return items

    def copy_folder(self, source: str, destination: str) -> dict[str, Any]:
        src = self.resolve(source)
        dest = self.resolve(destination)
        if not src.is_dir():
            raise NotFoundError("Source folder", source)
        if dest == src or src in dest.parents:
            raise ValidationError("Cannot copy a folder into itself", path=destination)
        shutil.copytree(src, dest, dirs_exist_ok=True)
        return {
            "source": source,
            "destination": destination,
            "message": "Folder copied successfully",
        }

    def move_folder(self, source: str, destination: str) -> dict[str, Any]:
        src = self.resolve(source)
        dest = self.resolve(destination)
        if src == self.root:
            raise ValidationError("Cannot move the project root folder", path=source)
        if not src.exists():
            raise NotFoundError("Source folder", source)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dest))
        return {
            "source": source,
            "destination": destination,
            "message": "Folder moved successfully",
        }

    # ── Queries ──

    def exists(self, path: str) -> dict[str, Any]:
        target = self.resolve(path)
        kind = None
        if target.exists():
            kind = "folder" if target.is_dir() else "file"
        return {"path": path, "exists": kind is not None, "type": kind}

    def get_info(self, path: str) -> dict[str, Any]:
        target = self.resolve(path)
        if not target.exists():
            raise NotFoundError("Path", path)
        st = target.stat()
        return {
            "path": path,
            "absolutePath": str(target),
            "type": "folder" if target.is_dir() else "file",
            "size": st.st_size,
            "created": _iso(getattr(st, "st_birthtime", st.st_ctime)),
            "modified": _iso(st.st_mtime),
            "accessed": _iso(st.st_atime),
            "permissions": oct(st.st_mode & 0o7777)[2:],
        }

    def search_files(
        self,
        pattern: str,
        max_depth: int = DEFAULT_SEARCH_DEPTH,
        include_hidden: bool = False,
    ) -> dict[str, Any]:
        """Match entry names against *pattern*, where ``*`` is a wildcard."""
        if not pattern:
            raise ValidationError("Search pattern must not be empty")
        regex = re.compile(".*".join(re.escape(part) for part in pattern.split("*")), re.IGNORECASE)
        matches: list[dict[str, Any]] = []

        def walk(directory: Path, depth: int) -> None:
            if depth > max_depth:
                return
            try:
                children = sorted(directory.iterdir(), key=lambda p: p.name)
            except OSError:
                return
            for child in children:
                if not include_hidden and child.name.startswith("."):
                    continue
                if regex.search(child.name):
                    try:
                        matches.append(self._entry(child, self.relative(child)))
                    except OSError:
                        pass
                if child.is_dir() and not child.is_symlink():
                    walk(child, depth + 1)

        walk(self.root, 0)
        return {"pattern": pattern, "matches": matches, "count": len(matches)}

    @staticmethod
    def get_system_info() -> dict[str, Any]:
        return {
            "platform": platform.system().lower(),
            "arch": platform.machine(),
            "hostname": socket.gethostname(),
            "homeDir": str(Path.home()),
            "tempDir": tempfile.gettempdir(),
            "cpus": os.cpu_count(),
            "python": platform.python_version(),
        }

    # ── Rollback helpers ──

    def prune_empty_parents(self, path: Path) -> list[Path]:
        """Remove empty ancestor directories of *path*, stopping at the root."""
        removed: list[Path] = []
        current = path.parent
        while current != self.root and self.root in current.parents:
            try:
                current.rmdir()
            except OSError:
                # Not empty, or already gone.
                break
            removed.append(current)
            current = current.parent
        return removed
