"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - One-active-execution-per-contact is a plain UNIQUE column
    (`active_contact_key` = contact_id while WAITING/PROCESSING, NULL
    otherwise) instead of a partial index, so it works on every backend.
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    nodes: Mapped[Any] = mapped_column(JSON, default=list)
    edges: Mapped[Any] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    trigger_keyword: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=100)
    cooldown_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_flows_active_priority", "is_active", "priority"),
    )


# ──────────────────────────────────────────────────────────────
#  Flow executions
# ──────────────────────────────────────────────────────────────

class FlowExecutionRow(Base):
    __tablename__ = "flow_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="PROCESSING")
    current_node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    context_data: Mapped[Any] = mapped_column(JSON, default=dict)
    version: Mapped[int] = mapped_column(Integer, default=1)

    # contact_id while active, NULL once terminal; the UNIQUE index allows one live run per contact
    active_contact_key: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_flow_executions_contact_status", "contact_id", "status"),
        Index("ix_flow_executions_flow", "flow_id"),
        Index("ix_flow_executions_updated", "updated_at"),
    )
