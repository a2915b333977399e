"""File-change broadcaster for connected editor clients.

Fan-out of workspace mutations to every registered WebSocket.  Clients
whose send fails (or that are no longer connected) are dropped on the
next broadcast.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Protocol

logger = logging.getLogger(__name__)

FileChangeType = Literal["file_created", "file_modified", "file_deleted", "file_renamed"]


class FileChangeClient(Protocol):
    async def send_json(self, data: Any) -> None: ...


@dataclass(frozen=True)
class FileChangeEvent:
    """A single workspace mutation as seen by editor clients."""

    type: FileChangeType
    path: str
    old_path: str | None = None  # For renames
    content: str | None = None  # For created/modified files

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "path": self.path}
        if self.old_path is not None:
            data["oldPath"] = self.old_path
        if self.content is not None:
            data["content"] = self.content
        return data


class FileWatcher:
    """Registry of editor clients plus broadcast helpers."""

    def __init__(self) -> None:
        self._clients: set[FileChangeClient] = set()

    def add_client(self, client: FileChangeClient) -> None:
        self._clients.add(client)
        logger.debug("File-change client connected (%d total)", len(self._clients))

    def remove_client(self, client: FileChangeClient) -> None:
        self._clients.discard(client)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def broadcast(self, event: FileChangeEvent) -> int:
        """Send an event to every client. Returns number of successful sends."""
        message = event.to_dict()
        dead: list[FileChangeClient] = []
        sent = 0

        for client in list(self._clients):
            try:
                await client.send_json(message)
                sent += 1
            except Exception as e:
                logger.warning("Dropping file-change client after failed send: %s", e)
                dead.append(client)

        for client in dead:
            self._clients.discard(client)
        return sent

    async def notify_file_created(self, path: str, content: str | None = None) -> None:
        await self.broadcast(FileChangeEvent(type="file_created", path=path, content=content))

    async def notify_file_modified(self, path: str, content: str | None = None) -> None:
        await self.broadcast(FileChangeEvent(type="file_modified", path=path, content=content))

    async def notify_file_deleted(self, path: str) -> None:
        await self.broadcast(FileChangeEvent(type="file_deleted", path=path))

    async def notify_file_renamed(self, old_path: str, new_path: str) -> None:
        await self.broadcast(FileChangeEvent(type="file_renamed", path=new_path, old_path=old_path))
