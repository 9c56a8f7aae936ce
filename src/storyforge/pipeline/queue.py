"""Lease-based message queues.

All backends give at-least-once delivery: a claimed message stays invisible
until its lease expires, and comes back if it is not acked by then. A claim
that would push read_count past the dead-letter threshold poisons the message
instead; it is returned once, flagged, so the consumer can fail its job, and
is never claimable again.
"""

import json
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storyforge.core.clock import Clock, SystemClock
from storyforge.models.queue_message import QueueMessage
from storyforge.services.exceptions import QueueUnavailable

logger = structlog.get_logger(__name__)

POISONED_REASON = "read count exceeded dead-letter threshold"


@dataclass(frozen=True)
class QueueMetrics:
    queue_name: str
    queue_length: int
    visible: int
    in_flight: int
    poisoned: int
    oldest_message_age_seconds: float | None


class QueueStore(Protocol):
    """Queue contract shared by all backends. One store serves one queue."""

    queue_name: str

    async def enqueue(self, payload: dict, delay: float = 0) -> int: ...

    async def claim_batch(self, max_n: int, lease_seconds: float) -> list[QueueMessage]: ...

    async def ack(self, message_id: int) -> bool: ...

    async def release(self, message_id: int, delay: float = 0) -> bool: ...

    async def dead_letter(self, message_id: int, reason: str) -> bool: ...

    async def metrics(self) -> QueueMetrics: ...


def _age_seconds(now: datetime, oldest: datetime | None) -> float | None:
    if oldest is None:
        return None
    return max((now - oldest).total_seconds(), 0.0)


def _detached(message: QueueMessage) -> QueueMessage:
    return QueueMessage(**message.model_dump())


class InMemoryQueueStore:
    """Single-process queue for development and tests."""

    def __init__(
        self,
        queue_name: str,
        dead_letter_threshold: int = 5,
        clock: Clock | None = None,
    ):
        self.queue_name = queue_name
        self.dead_letter_threshold = dead_letter_threshold
        self.clock = clock or SystemClock()
        self._messages: dict[int, QueueMessage] = {}
        self._next_id = 1

    async def enqueue(self, payload: dict, delay: float = 0) -> int:
        now = self.clock.now()
        message = QueueMessage(
            id=self._next_id,
            queue_name=self.queue_name,
            payload=payload,
            enqueued_at=now,
            visible_at=now + timedelta(seconds=delay),
            read_count=0,
            poisoned=False,
        )
        self._messages[message.id] = message
        self._next_id += 1
        logger.debug("queue.enqueued", queue=self.queue_name, message_id=message.id)
        return message.id

    async def claim_batch(self, max_n: int, lease_seconds: float) -> list[QueueMessage]:
        now = self.clock.now()
        visible = sorted(
            (m for m in self._messages.values() if not m.poisoned and m.visible_at <= now),
            key=lambda m: (m.visible_at, m.id),
        )[:max_n]

        claimed = []
        for message in visible:
            message.read_count += 1
            if message.read_count > self.dead_letter_threshold:
                message.poisoned = True
                message.dead_letter_reason = POISONED_REASON
                logger.warning(
                    "queue.message.poisoned",
                    queue=self.queue_name,
                    message_id=message.id,
                    read_count=message.read_count,
                )
            else:
                message.visible_at = now + timedelta(seconds=lease_seconds)
            claimed.append(_detached(message))
        return claimed

    async def ack(self, message_id: int) -> bool:
        return self._messages.pop(message_id, None) is not None

    async def release(self, message_id: int, delay: float = 0) -> bool:
        message = self._messages.get(message_id)
        if message is None or message.poisoned:
            return False
        message.visible_at = self.clock.now() + timedelta(seconds=delay)
        return True

    async def dead_letter(self, message_id: int, reason: str) -> bool:
        message = self._messages.get(message_id)
        if message is None:
            return False
        message.poisoned = True
        message.dead_letter_reason = reason
        logger.warning(
            "queue.message.dead_lettered",
            queue=self.queue_name,
            message_id=message_id,
            reason=reason,
        )
        return True

    async def metrics(self) -> QueueMetrics:
        now = self.clock.now()
        live = [m for m in self._messages.values() if not m.poisoned]
        visible = sum(1 for m in live if m.visible_at <= now)
        oldest = min((m.enqueued_at for m in live), default=None)
        return QueueMetrics(
            queue_name=self.queue_name,
            queue_length=len(live),
            visible=visible,
            in_flight=len(live) - visible,
            poisoned=len(self._messages) - len(live),
            oldest_message_age_seconds=_age_seconds(now, oldest),
        )

    def get(self, message_id: int) -> QueueMessage | None:
        """Inspect a stored message (including poisoned ones)."""
        message = self._messages.get(message_id)
        return _detached(message) if message else None


class PostgresQueueStore:
    """Queue backed by the queue_messages table.

    Claims lock candidate rows with FOR UPDATE SKIP LOCKED and move their
    visibility in the same transaction, so concurrent passes never receive
    the same message while its lease is live.
    """

    def __init__(
        self,
        uow_factory,
        queue_name: str,
        dead_letter_threshold: int = 5,
        clock: Clock | None = None,
    ):
        """Initialize table-backed queue.

        Args:
            uow_factory: Factory returning UnitOfWork instances
            queue_name: Queue served by this store
            dead_letter_threshold: Deliveries allowed before a message is poisoned
            clock: Time source for leases
        """
        self.uow_factory = uow_factory
        self.queue_name = queue_name
        self.dead_letter_threshold = dead_letter_threshold
        self.clock = clock or SystemClock()

    @asynccontextmanager
    async def _transaction(self, operation: str):
        try:
            async with await self.uow_factory() as uow:
                yield uow
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "queue.unavailable", queue=self.queue_name, operation=operation, error=str(e)
            )
            raise QueueUnavailable(f"Queue {self.queue_name} {operation} failed: {e}") from e

    async def enqueue(self, payload: dict, delay: float = 0) -> int:
        now = self.clock.now()
        async with self._transaction("enqueue") as uow:
            message = await uow.queue_messages.add(
                QueueMessage(
                    queue_name=self.queue_name,
                    payload=payload,
                    enqueued_at=now,
                    visible_at=now + timedelta(seconds=delay),
                )
            )
            message_id = message.id
        logger.debug("queue.enqueued", queue=self.queue_name, message_id=message_id)
        return message_id

    async def claim_batch(self, max_n: int, lease_seconds: float) -> list[QueueMessage]:
        now = self.clock.now()
        claimed = []
        async with self._transaction("claim") as uow:
            for message in await uow.queue_messages.lock_visible(self.queue_name, max_n, now):
                message.read_count += 1
                if message.read_count > self.dead_letter_threshold:
                    message.poisoned = True
                    message.dead_letter_reason = POISONED_REASON
                    logger.warning(
                        "queue.message.poisoned",
                        queue=self.queue_name,
                        message_id=message.id,
                        read_count=message.read_count,
                    )
                else:
                    message.visible_at = now + timedelta(seconds=lease_seconds)
                claimed.append(_detached(message))
        return claimed

    async def ack(self, message_id: int) -> bool:
        async with self._transaction("ack") as uow:
            return await uow.queue_messages.delete(message_id)

    async def release(self, message_id: int, delay: float = 0) -> bool:
        visible_at = self.clock.now() + timedelta(seconds=delay)
        async with self._transaction("release") as uow:
            return await uow.queue_messages.set_visible_at(message_id, visible_at)

    async def dead_letter(self, message_id: int, reason: str) -> bool:
        async with self._transaction("dead_letter") as uow:
            updated = await uow.queue_messages.mark_poisoned(message_id, reason)
        if updated:
            logger.warning(
                "queue.message.dead_lettered",
                queue=self.queue_name,
                message_id=message_id,
                reason=reason,
            )
        return updated

    async def metrics(self) -> QueueMetrics:
        now = self.clock.now()
        async with self._transaction("metrics") as uow:
            counts = await uow.queue_messages.metrics(self.queue_name, now)
        return QueueMetrics(
            queue_name=self.queue_name,
            queue_length=counts["total"],
            visible=counts["visible"],
            in_flight=counts["total"] - counts["visible"],
            poisoned=counts["poisoned"],
            oldest_message_age_seconds=_age_seconds(now, counts["oldest_enqueued_at"]),
        )


_PGMQ_QUEUE_NAME = re.compile(r"^[a-z_][a-z0-9_]{0,46}$")


class PgmqQueueStore:
    """Queue backed by the pgmq Postgres extension (Supabase Queues).

    pgmq keeps its own read counter and visibility timeout; poisoned messages
    are moved to the queue's archive table. pgmq clocks leases with the
    database's now(), so this store takes no Clock.
    """

    def __init__(self, uow_factory, queue_name: str, dead_letter_threshold: int = 5):
        """Initialize pgmq-backed queue.

        Args:
            uow_factory: Factory returning UnitOfWork instances
            queue_name: Existing pgmq queue (created with pgmq.create)
            dead_letter_threshold: Deliveries allowed before a message is archived

        Raises:
            ValueError: Queue name is not a valid pgmq identifier
        """
        if not _PGMQ_QUEUE_NAME.match(queue_name):
            raise ValueError(f"Invalid pgmq queue name: {queue_name!r}")
        self.uow_factory = uow_factory
        self.queue_name = queue_name
        self.dead_letter_threshold = dead_letter_threshold

    @asynccontextmanager
    async def _transaction(self, operation: str):
        try:
            async with await self.uow_factory() as uow:
                yield uow.session
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "queue.unavailable", queue=self.queue_name, operation=operation, error=str(e)
            )
            raise QueueUnavailable(f"Queue {self.queue_name} {operation} failed: {e}") from e

    async def enqueue(self, payload: dict, delay: float = 0) -> int:
        async with self._transaction("enqueue") as session:
            result = await session.execute(
                text("SELECT pgmq.send(:queue, CAST(:payload AS jsonb), :delay)"),
                {
                    "queue": self.queue_name,
                    "payload": json.dumps(payload),
                    "delay": int(delay),
                },
            )
            message_id = result.scalar_one()
        logger.debug("queue.enqueued", queue=self.queue_name, message_id=message_id)
        return message_id

    async def claim_batch(self, max_n: int, lease_seconds: float) -> list[QueueMessage]:
        claimed = []
        async with self._transaction("claim") as session:
            result = await session.execute(
                text(
                    "SELECT msg_id, read_ct, enqueued_at, vt, message "
                    "FROM pgmq.read(:queue, :vt, :qty)"
                ),
                {"queue": self.queue_name, "vt": int(lease_seconds), "qty": max_n},
            )
            for msg_id, read_ct, enqueued_at, vt, payload in result.all():
                message = QueueMessage(
                    id=msg_id,
                    queue_name=self.queue_name,
                    payload=payload or {},
                    enqueued_at=enqueued_at,
                    visible_at=vt,
                    read_count=read_ct,
                    poisoned=False,
                )
                if read_ct > self.dead_letter_threshold:
                    await session.execute(
                        text("SELECT pgmq.archive(:queue, :msg_id)"),
                        {"queue": self.queue_name, "msg_id": msg_id},
                    )
                    message.poisoned = True
                    message.dead_letter_reason = POISONED_REASON
                    logger.warning(
                        "queue.message.poisoned",
                        queue=self.queue_name,
                        message_id=msg_id,
                        read_count=read_ct,
                    )
                claimed.append(message)
        return claimed

    async def ack(self, message_id: int) -> bool:
        async with self._transaction("ack") as session:
            result = await session.execute(
                text("SELECT pgmq.delete(:queue, :msg_id)"),
                {"queue": self.queue_name, "msg_id": message_id},
            )
            return bool(result.scalar_one())

    async def release(self, message_id: int, delay: float = 0) -> bool:
        async with self._transaction("release") as session:
            result = await session.execute(
                text("SELECT msg_id FROM pgmq.set_vt(:queue, :msg_id, :vt)"),
                {"queue": self.queue_name, "msg_id": message_id, "vt": int(delay)},
            )
            return result.first() is not None

    async def dead_letter(self, message_id: int, reason: str) -> bool:
        # pgmq archives have no reason column; the reason lives in the logs
        async with self._transaction("dead_letter") as session:
            result = await session.execute(
                text("SELECT pgmq.archive(:queue, :msg_id)"),
                {"queue": self.queue_name, "msg_id": message_id},
            )
            archived = bool(result.scalar_one())
        if archived:
            logger.warning(
                "queue.message.dead_lettered",
                queue=self.queue_name,
                message_id=message_id,
                reason=reason,
            )
        return archived

    async def metrics(self) -> QueueMetrics:
        # Table names are derived from the validated queue name
        async with self._transaction("metrics") as session:
            row = (
                await session.execute(
                    text(
                        "SELECT queue_length, oldest_msg_age_sec FROM pgmq.metrics(:queue)"
                    ),
                    {"queue": self.queue_name},
                )
            ).one()
            visible = (
                await session.execute(
                    text(f"SELECT count(*) FROM pgmq.q_{self.queue_name} WHERE vt <= now()")
                )
            ).scalar_one()
            poisoned = (
                await session.execute(text(f"SELECT count(*) FROM pgmq.a_{self.queue_name}"))
            ).scalar_one()

        queue_length, oldest_age = row
        return QueueMetrics(
            queue_name=self.queue_name,
            queue_length=queue_length,
            visible=visible,
            in_flight=queue_length - visible,
            poisoned=poisoned,
            oldest_message_age_seconds=float(oldest_age) if oldest_age is not None else None,
        )
