"""Sandboxed access to the editor workspace.

Every operation resolves its path argument against the workspace root
and enforces two checks before touching the filesystem:

- containment: the lexically normalized path, and its symlink-resolved
  form, must stay at or under the root
- restriction: no component of the path may name a restricted subtree
  (.git, node_modules, .env by default)

Blocking filesystem work is pushed to a thread with asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from atelier.errors import AccessDeniedError
from atelier.events import FileWatcher

logger = logging.getLogger(__name__)

RESTRICTED_FOLDERS: tuple[str, ...] = (".git", "node_modules", ".env")

DEFAULT_SEARCH_LIMIT = 50

_OUTSIDE = "Access denied: path outside workspace"


class Workspace:
    """Path-validated file operations rooted at a single directory."""

    def __init__(
        self,
        root: str | os.PathLike[str],
        restricted: tuple[str, ...] = RESTRICTED_FOLDERS,
        watcher: FileWatcher | None = None,
    ) -> None:
        self.root = Path(os.path.realpath(root))
        self.restricted = frozenset(restricted)
        self.watcher = watcher

    # ------------------------------------------------------------------
    # Path checks
    # ------------------------------------------------------------------

    def _lexical(self, path: str) -> Path:
        if "\x00" in path:
            raise ValueError("embedded null byte")
        return Path(os.path.normpath(os.path.join(self.root, path)))

    def _contained(self, candidate: Path) -> bool:
        return candidate == self.root or candidate.is_relative_to(self.root)

    def is_safe(self, path: str) -> bool:
        """True iff ``path`` resolves to the root or one of its descendants."""
        try:
            target = self._lexical(path)
            if not self._contained(target):
                return False
            return self._contained(Path(os.path.realpath(target)))
        except (OSError, ValueError):
            return False

    def is_restricted(self, path: str) -> bool:
        """True iff ``path`` lies inside any restricted subtree.

        Paths that cannot be resolved inside the root count as restricted.
        """
        try:
            target = self._lexical(path)
            real = Path(os.path.realpath(target))
            parts = set(target.relative_to(self.root).parts)
            if real != target and self._contained(real):
                parts |= set(real.relative_to(self.root).parts)
        except (OSError, ValueError):
            return True
        return not self.restricted.isdisjoint(parts)

    def resolve(self, path: str, action: str) -> Path:
        """Return the absolute target for ``path`` or raise AccessDeniedError.

        ``action`` names the operation in the restricted-folder message,
        e.g. "read" or "write to".
        """
        if not self.is_safe(path):
            logger.warning("Rejected path outside workspace: %r", path)
            raise AccessDeniedError(_OUTSIDE)
        if self.is_restricted(path):
            logger.warning("Rejected restricted path for %s: %r", action, path)
            raise AccessDeniedError(f"Access denied: cannot {action} restricted folders")
        return self._lexical(path)

    def relative(self, target: Path) -> str:
        rel = target.relative_to(self.root).as_posix()
        return rel if rel != "." else ""

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def read(self, path: str) -> str:
        target = self.resolve(path, "read")
        return await asyncio.to_thread(target.read_text, encoding="utf-8")

    async def write(self, path: str, content: str, *, notify: bool = False) -> bool:
        """Write ``content``, creating parent directories. Returns True if created."""
        target = self.resolve(path, "write to")
        created = await asyncio.to_thread(_write_text, target, content)
        logger.info("%s %s (%d chars)", "Created" if created else "Modified", target, len(content))

        if notify and self.watcher is not None:
            rel = self.relative(target)
            if created:
                await self.watcher.notify_file_created(rel, content)
            else:
                await self.watcher.notify_file_modified(rel, content)
        return created

    async def list(self, path: str = ".") -> list[dict[str, Any]]:
        target = self.resolve(path, "list")
        return await asyncio.to_thread(self._list_sync, target)

    async def search(
        self,
        query: str,
        path: str | None = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[dict[str, Any]]:
        """Case-insensitive line search across text files under ``path``."""
        target = self.resolve(path or ".", "read")
        return await asyncio.to_thread(self._search_sync, target, query, limit)

    async def delete(self, path: str, *, notify: bool = False) -> None:
        target = self.resolve(path, "delete")
        if target == self.root:
            raise AccessDeniedError("Access denied: cannot delete workspace root")

        await asyncio.to_thread(_remove, target)
        logger.info("Deleted %s", target)

        if notify and self.watcher is not None:
            await self.watcher.notify_file_deleted(self.relative(target))

    # ------------------------------------------------------------------
    # Thread-side helpers
    # ------------------------------------------------------------------

    def _list_sync(self, directory: Path) -> list[dict[str, Any]]:
        files = []
        with os.scandir(directory) as it:
            for entry in sorted(it, key=lambda e: e.name):
                if entry.name in self.restricted:
                    continue
                stats = entry.stat()
                files.append({
                    "name": entry.name,
                    "type": "directory" if entry.is_dir() else "file",
                    "size": stats.st_size,
                })
        return files

    def _search_sync(self, start: Path, query: str, limit: int) -> list[dict[str, Any]]:
        needle = query.lower()
        results: list[dict[str, Any]] = []

        for file_path in self._search_candidates(start):
            try:
                text = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                # Skip files that can't be read as text
                continue

            for lineno, line in enumerate(text.split("\n"), start=1):
                if needle in line.lower():
                    results.append({
                        "file": self.relative(file_path),
                        "line": lineno,
                        "content": line.strip(),
                    })
                    if len(results) >= limit:
                        return results
        return results

    def _search_candidates(self, start: Path) -> Iterator[Path]:
        """Files to scan under ``start``; a file path scans just that file."""
        if start.is_file():
            yield start
            return

        for dirpath, dirnames, filenames in os.walk(start):
            dirnames[:] = sorted(d for d in dirnames if d not in self.restricted)
            for name in sorted(filenames):
                if name in self.restricted:
                    continue
                file_path = Path(dirpath) / name
                if self._contained(Path(os.path.realpath(file_path))):
                    yield file_path


def _write_text(target: Path, content: str) -> bool:
    created = not target.exists()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    return created


def _remove(target: Path) -> None:
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()
