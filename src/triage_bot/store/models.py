from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from triage_bot.types import utcnow


class StoreBase(DeclarativeBase):
    __table_args__ = {"sqlite_autoincrement": True}


class Channel(StoreBase):
    __tablename__ = "channel"

    id: Mapped[int] = mapped_column(primary_key=True)
    channel_id: Mapped[str] = mapped_column(Text, unique=True, index=True)
    directive: Mapped[str] = mapped_column(Text)
    oncall_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    facts: Mapped[list["ChannelFact"]] = relationship(back_populates="channel")


class ChannelFact(StoreBase):
    """Append-only; an edit is a new row pointing at the row it supersedes."""

    __tablename__ = "channel_fact"

    id: Mapped[int] = mapped_column(primary_key=True)
    channel_id: Mapped[str] = mapped_column(ForeignKey("channel.channel_id"), index=True)
    text: Mapped[str] = mapped_column(Text)
    added_by: Mapped[str] = mapped_column(Text, default="")
    supersedes: Mapped[int | None] = mapped_column(ForeignKey("channel_fact.id"), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    channel: Mapped["Channel"] = relationship(back_populates="facts")


class ChannelMessage(StoreBase):
    """Messages can arrive before any channel state exists, so there is no FK to ``channel``."""

    __tablename__ = "channel_message"
    __table_args__ = (
        UniqueConstraint("channel_id", "ts", name="uq_channel_message_ts"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    channel_id: Mapped[str] = mapped_column(Text, index=True)
    ts: Mapped[str] = mapped_column(Text)
    thread_ts: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    author: Mapped[str] = mapped_column(Text, default="")
    text: Mapped[str] = mapped_column(Text, default="")

    classification_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    classified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reply_ts: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class RunTrace(StoreBase):
    __tablename__ = "run_trace"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[str] = mapped_column(Text, unique=True, index=True)
    channel_id: Mapped[str] = mapped_column(Text, index=True)
    message_ts: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text)
    iterations: Mapped[int] = mapped_column(Integer, default=0)

    classification_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    tools_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    mutations_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    reply: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
