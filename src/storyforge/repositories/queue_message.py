"""QueueMessage repository for the table-backed queue.

Worker coordination uses FOR UPDATE SKIP LOCKED so concurrent passes
receive non-overlapping sets of messages.
"""

from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storyforge.models.queue_message import QueueMessage


class QueueMessageRepository:
    """Repository for QueueMessage entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, message: QueueMessage) -> QueueMessage:
        """Persist new message.

        Args:
            message: Message entity to persist

        Returns:
            Persisted message with generated ID
        """
        self.session.add(message)
        await self.session.flush()
        return message

    async def lock_visible(self, queue_name: str, limit: int, now: datetime) -> list[QueueMessage]:
        """Retrieve claimable messages with row-level locking.

        Query explanation:
        - WHERE NOT poisoned AND visible_at <= now: Only claimable messages
        - ORDER BY visible_at, id: Longest-waiting first (no FIFO guarantee)
        - LIMIT: Batch size for this pass
        - FOR UPDATE SKIP LOCKED: Lock rows, skip rows another pass holds

        Args:
            queue_name: Queue to read from
            limit: Maximum number of messages
            now: Current time

        Returns:
            Locked messages; caller must update visible_at in the same transaction
        """
        result = await self.session.execute(
            select(QueueMessage)
            .where(
                QueueMessage.queue_name == queue_name,  # type: ignore[arg-type]
                QueueMessage.poisoned.is_(False),  # type: ignore[attr-defined]
                QueueMessage.visible_at <= now,  # type: ignore[arg-type]
            )
            .order_by(QueueMessage.visible_at.asc(), QueueMessage.id.asc())  # type: ignore[attr-defined, union-attr]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def delete(self, message_id: int) -> bool:
        """Delete message (idempotent).

        Returns:
            True if a row was deleted, False if it was already gone
        """
        result = await self.session.execute(
            delete(QueueMessage).where(QueueMessage.id == message_id)  # type: ignore[arg-type]
        )
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def set_visible_at(self, message_id: int, visible_at: datetime) -> bool:
        """Move a live message's visibility time.

        Returns:
            True if updated, False if the message is gone or poisoned
        """
        result = await self.session.execute(
            update(QueueMessage)
            .where(
                QueueMessage.id == message_id,  # type: ignore[arg-type]
                QueueMessage.poisoned.is_(False),  # type: ignore[attr-defined]
            )
            .values(visible_at=visible_at)
        )
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def mark_poisoned(self, message_id: int, reason: str) -> bool:
        """Route message to the dead-letter state.

        Returns:
            True if updated, False if the message is gone
        """
        result = await self.session.execute(
            update(QueueMessage)
            .where(QueueMessage.id == message_id)  # type: ignore[arg-type]
            .values(poisoned=True, dead_letter_reason=reason[:1000])
        )
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def metrics(self, queue_name: str, now: datetime) -> dict:
        """Aggregate queue counters in a single query.

        Returns:
            Dict with total, visible, poisoned counts and oldest live enqueued_at
        """
        live = QueueMessage.poisoned.is_(False)  # type: ignore[attr-defined]
        result = await self.session.execute(
            select(
                func.count().filter(live),
                func.count().filter(live, QueueMessage.visible_at <= now),  # type: ignore[arg-type]
                func.count().filter(QueueMessage.poisoned.is_(True)),  # type: ignore[attr-defined]
                func.min(QueueMessage.enqueued_at).filter(live),
            ).where(QueueMessage.queue_name == queue_name)  # type: ignore[arg-type]
        )
        total, visible, poisoned, oldest = result.one()
        return {
            "total": total,
            "visible": visible,
            "poisoned": poisoned,
            "oldest_enqueued_at": oldest,
        }
