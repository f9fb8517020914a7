"""
Direct messaging models
"""
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from iplicensing.database import Base
from iplicensing.models.base import IdMixin, SoftDeleteMixin, TimestampMixin


class MessageThread(IdMixin, TimestampMixin, SoftDeleteMixin, Base):
    """
    A conversation between a fixed set of users.

    `participant_key` is the sorted, comma-joined participant ids, so the
    same set of people always maps to the same thread.
    """

    __tablename__ = "message_threads"

    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    participant_key: Mapped[str] = mapped_column(String(1024), nullable=False, unique=True)
    created_by: Mapped[str] = mapped_column(Uuid(as_uuid=False), nullable=False)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    @property
    def participant_ids(self) -> list[str]:
        return self.participant_key.split(",")

    def __repr__(self) -> str:
        return f"<MessageThread {self.id} [{self.participant_key}]>"


class ThreadParticipant(IdMixin, Base):
    __tablename__ = "thread_participants"

    thread_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("message_threads.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        UniqueConstraint("thread_id", "user_id", name="uq_thread_participant"),
    )


class Message(IdMixin, TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "messages"

    thread_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("message_threads.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("users.id"), nullable=False)
    recipient_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("users.id"), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_message_thread_created", "thread_id", "created_at"),
        Index("idx_message_recipient_read", "recipient_id", "read_at"),
    )

    def __repr__(self) -> str:
        return f"<Message {self.id} {self.sender_id} -> {self.recipient_id}>"
