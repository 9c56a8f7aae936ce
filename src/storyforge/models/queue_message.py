"""QueueMessage entity - wire-level unit of work in a lease-based queue."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, BigInteger, Column, DateTime
from sqlmodel import Field, SQLModel

from storyforge.core.clock import utcnow


class QueueMessage(SQLModel, table=True):
    """A message is claimable iff it is not poisoned and visible_at <= now.

    The payload is opaque to the queue. While a message is leased, visible_at
    holds the lease expiry.
    """

    __tablename__ = "queue_messages"  # type: ignore[assignment]

    id: Optional[int] = Field(
        default=None, sa_column=Column(BigInteger, primary_key=True, autoincrement=True)
    )
    queue_name: str = Field(max_length=100, index=True)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    enqueued_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    visible_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), index=True
    )
    read_count: int = Field(default=0, ge=0)
    poisoned: bool = Field(default=False, index=True)
    dead_letter_reason: Optional[str] = Field(default=None, max_length=1000)
