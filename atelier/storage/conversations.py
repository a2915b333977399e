"""Durable conversation store with lazy and periodic expiry.

Conversations live in SQLite and are hard-deleted, together with their
turns, once ``now - updated_at`` exceeds the retention window.  Expiry
happens in two places:

- lazily on ``get()`` / ``add_message()`` for the conversation touched
- in bulk by ``cleanup()``, which ``start()`` schedules on an interval

Every public method accepts an optional ``session`` for transaction
injection; without one it opens and commits its own.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from datetime import timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from atelier.errors import NotFoundError
from atelier.storage.database import Database
from atelier.storage.models import ConversationRow, MessageRow
from atelier.storage.schemas import (
    Conversation,
    ConversationSummary,
    Role,
    StoreStats,
    Turn,
)

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(hours=24)
DEFAULT_CLEANUP_INTERVAL = 3600  # seconds


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_conversation_id(now_ms: int | None = None) -> str:
    """Time-sortable opaque id: conv_<epoch-ms>_<9 hex chars>."""
    ms = _now_ms() if now_ms is None else now_ms
    return f"conv_{ms}_{secrets.token_hex(5)[:9]}"


class ConversationStore:
    def __init__(
        self,
        database: Database,
        retention: timedelta = DEFAULT_RETENTION,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
    ) -> None:
        self.db = database
        self.retention_ms = int(retention.total_seconds() * 1000)
        self.cleanup_interval = cleanup_interval
        self._task: asyncio.Task | None = None

    def _cutoff(self) -> int:
        return _now_ms() - self.retention_ms

    def _is_expired(self, row: ConversationRow) -> bool:
        return _now_ms() - row.updated_at > self.retention_ms

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run an initial sweep, then schedule the periodic one."""
        await self.cleanup()
        self._task = asyncio.create_task(self._cleanup_loop(), name="conversation-cleanup")
        logger.info(
            "Conversation cleanup scheduled (retention=%dh, every %ds)",
            self.retention_ms // 3_600_000,
            self.cleanup_interval,
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval)
                await self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Conversation cleanup failed")

    # ------------------------------------------------------------------
    # create() / get()
    # ------------------------------------------------------------------

    async def create(self, session: AsyncSession | None = None) -> Conversation:
        if session is None:
            async with self.db.session() as session:
                result = await self._create(session)
                await session.commit()
                return result
        return await self._create(session)

    async def _create(self, session: AsyncSession) -> Conversation:
        now = _now_ms()
        row = ConversationRow(id=new_conversation_id(now), created_at=now, updated_at=now)
        session.add(row)
        await session.flush()
        logger.debug("Created conversation %s", row.id)
        return Conversation(id=row.id, messages=[], created_at=now, updated_at=now)

    async def get(self, conversation_id: str, session: AsyncSession | None = None) -> Conversation | None:
        """Return the conversation, or None if absent or expired.

        An expired conversation is deleted as a side effect.
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._get(conversation_id, session)
                await session.commit()
                return result
        return await self._get(conversation_id, session)

    async def _get(self, conversation_id: str, session: AsyncSession) -> Conversation | None:
        row = await session.get(ConversationRow, conversation_id)
        if row is None:
            return None
        if self._is_expired(row):
            await self._delete_ids([conversation_id], session)
            logger.info("Conversation %s expired on read", conversation_id)
            return None

        result = await session.execute(
            select(MessageRow)
            .where(MessageRow.conversation_id == conversation_id)
            .order_by(MessageRow.id)
        )
        turns = [
            Turn(role=m.role, content=m.content, created_at=m.created_at)
            for m in result.scalars()
        ]
        return Conversation(
            id=row.id,
            messages=turns,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # ------------------------------------------------------------------
    # add_message()
    # ------------------------------------------------------------------

    async def add_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        session: AsyncSession | None = None,
    ) -> Turn:
        """Append a turn and bump updated_at.

        Raises NotFoundError if the conversation is absent or expired.
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._add_message(conversation_id, role, content, session)
                await session.commit()
                return result
        return await self._add_message(conversation_id, role, content, session)

    async def _add_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        session: AsyncSession,
    ) -> Turn:
        row = await session.get(ConversationRow, conversation_id)
        if row is None or self._is_expired(row):
            raise NotFoundError("Conversation not found")

        # updated_at must strictly advance even within the same millisecond
        now = max(_now_ms(), row.updated_at + 1)
        session.add(MessageRow(
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=now,
        ))
        row.updated_at = now
        await session.flush()
        return Turn(role=role, content=content, created_at=now)

    # ------------------------------------------------------------------
    # delete() / listing
    # ------------------------------------------------------------------

    async def delete(self, conversation_id: str) -> bool:
        async with self.db.session() as session:
            deleted = await self._delete_ids([conversation_id], session)
            await session.commit()
        return deleted > 0

    async def _delete_ids(self, ids: list[str], session: AsyncSession) -> int:
        if not ids:
            return 0
        # Explicit child delete so nothing relies on the FK pragma being on
        await session.execute(delete(MessageRow).where(MessageRow.conversation_id.in_(ids)))
        result = await session.execute(delete(ConversationRow).where(ConversationRow.id.in_(ids)))
        return result.rowcount or 0

    async def list(self) -> list[str]:
        """Ids of live conversations, most recently updated first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(ConversationRow.id)
                .where(ConversationRow.updated_at >= self._cutoff())
                .order_by(ConversationRow.updated_at.desc(), ConversationRow.id.desc())
            )
            return list(result.scalars())

    async def get_all(self) -> list[ConversationSummary]:
        """Summaries of live conversations, most recently updated first."""
        counts = (
            select(
                MessageRow.conversation_id,
                func.count(MessageRow.id).label("message_count"),
                func.min(MessageRow.id).label("first_id"),
            )
            .group_by(MessageRow.conversation_id)
            .subquery()
        )
        first = aliased(MessageRow)
        stmt = (
            select(ConversationRow, counts.c.message_count, first.content)
            .outerjoin(counts, counts.c.conversation_id == ConversationRow.id)
            .outerjoin(first, first.id == counts.c.first_id)
            .where(ConversationRow.updated_at >= self._cutoff())
            .order_by(ConversationRow.updated_at.desc(), ConversationRow.id.desc())
        )

        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [
                ConversationSummary(
                    id=row.id,
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                    message_count=message_count or 0,
                    preview=preview or "",
                )
                for row, message_count, preview in result.all()
            ]

    async def count(self) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                select(func.count(ConversationRow.id)).where(ConversationRow.updated_at >= self._cutoff())
            )
            return result.scalar() or 0

    # ------------------------------------------------------------------
    # cleanup() / stats
    # ------------------------------------------------------------------

    async def cleanup(self) -> int:
        """Delete every conversation past the retention window. Returns count."""
        async with self.db.session() as session:
            result = await session.execute(
                select(ConversationRow.id).where(ConversationRow.updated_at < self._cutoff())
            )
            expired = list(result.scalars())
            await self._delete_ids(expired, session)
            await session.commit()

        if expired:
            logger.info("Cleaned up %d expired conversations", len(expired))
        return len(expired)

    async def get_stats(self) -> StoreStats:
        async with self.db.session() as session:
            conversations = await session.execute(select(func.count(ConversationRow.id)))
            messages = await session.execute(select(func.count(MessageRow.id)))
            return StoreStats(
                conversations=conversations.scalar() or 0,
                messages=messages.scalar() or 0,
                db_size=self.db.size_bytes(),
            )
