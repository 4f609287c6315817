# backend/app/models.py
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base

# Every append-only history log a deficient item carries, keyed by the
# name handlers pass to the history resolver.
HISTORY_LOGS = (
    "state_history",
    "due_dates",
    "deferred_dates",
    "progress_notes",
    "completed_photos",
)

DEFICIENCY_STATES = (
    "requires-action",
    "go-back",
    "pending",
    "requires-progress-update",
    "deferred",
    "overdue",
    "incomplete",
    "completed",
    "closed",
)


def _loads_log(s: Optional[str]) -> dict[str, dict[str, Any]]:
    if not s:
        return {}
    try:
        x = json.loads(s)
    except Exception:
        return {}
    return x if isinstance(x, dict) else {}


def _dumps_log(x: Optional[dict[str, Any]]) -> Optional[str]:
    if not x:
        return None
    return json.dumps(x, sort_keys=True, separators=(",", ":"))


# -----------------------------
# Tenancy
# -----------------------------
class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(80), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class AppUser(Base):
    __tablename__ = "app_users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    zip: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # IANA name
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# -----------------------------
# Deficient items (active + archive stores)
# -----------------------------
class DeficientItemColumns:
    """
    Shared shape of the active and archived deficient item tables.

    History logs are stored as JSON text mapping an opaque entry id to the
    entry payload. Entries are appended, never rewritten.
    """

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), index=True, nullable=False)
    property_id: Mapped[str] = mapped_column(String(64), ForeignKey("properties.id"), index=True, nullable=False)
    inspection_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    item_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    state: Mapped[str] = mapped_column(String(40), nullable=False, default="requires-action")

    item_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    item_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    item_inspector_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    section_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    section_subtitle: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    current_due_date_day: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # MM/DD/YYYY
    current_deferred_date_day: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    current_responsibility_group: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    current_plan_to_fix: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_reason_incomplete: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Denormalized forward pointer to the Trello card
    trello_card_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    trello_card_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Causality token: bumped on every write; history entries record the
    # version of the write that appended them.
    write_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # unix seconds
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    state_history_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    due_dates_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    deferred_dates_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    progress_notes_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_photos_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def get_log(self, log_name: str) -> dict[str, dict[str, Any]]:
        if log_name not in HISTORY_LOGS:
            return {}
        return _loads_log(getattr(self, f"{log_name}_json"))

    def set_log(self, log_name: str, entries: dict[str, dict[str, Any]]) -> None:
        if log_name not in HISTORY_LOGS:
            raise KeyError(f"unknown history log: {log_name}")
        setattr(self, f"{log_name}_json", _dumps_log(entries))

    def as_document(self) -> dict[str, Any]:
        """Document view handed to the history resolver; absent logs are omitted."""
        doc: dict[str, Any] = {
            "id": self.id,
            "property_id": self.property_id,
            "state": self.state,
            "updated_at": self.updated_at,
            "write_version": self.write_version,
        }
        for name in HISTORY_LOGS:
            raw = getattr(self, f"{name}_json")
            if raw:
                doc[name] = _loads_log(raw)
        return doc

    def copy_columns(self) -> dict[str, Any]:
        return {c: getattr(self, c) for c in DEFICIENT_ITEM_COLUMNS}


class DeficientItem(DeficientItemColumns, Base):
    __tablename__ = "deficient_items"


class ArchivedDeficientItem(DeficientItemColumns, Base):
    __tablename__ = "archived_deficient_items"

    archived_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


DEFICIENT_ITEM_COLUMNS = tuple(
    c.key for c in DeficientItem.__table__.columns
)


# -----------------------------
# Trello integration
# -----------------------------
class TrelloCredential(Base):
    __tablename__ = "trello_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False, unique=True, index=True)
    auth_token: Mapped[str] = mapped_column(String(255), nullable=False)
    api_key: Mapped[str] = mapped_column(String(255), nullable=False)
    member_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class PropertyTrelloIntegration(Base):
    __tablename__ = "property_trello_integrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), index=True, nullable=False)
    property_id: Mapped[str] = mapped_column(String(64), ForeignKey("properties.id"), nullable=False, unique=True)
    board_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    open_list_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    closed_list_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class TrelloCardRef(Base):
    """Org/property scoped index: Trello card id -> owning deficient item."""

    __tablename__ = "trello_card_refs"
    __table_args__ = (
        UniqueConstraint("property_id", "card_id", name="uq_trello_card_refs_property_card"),
        UniqueConstraint("deficiency_id", name="uq_trello_card_refs_deficiency"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), index=True, nullable=False)
    property_id: Mapped[str] = mapped_column(String(64), ForeignKey("properties.id"), index=True, nullable=False)
    card_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deficiency_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class TrelloCommentReceipt(Base):
    """Dedupe key for comments already posted (redelivery guard)."""

    __tablename__ = "trello_comment_receipts"
    __table_args__ = (UniqueConstraint("dedupe_key", name="uq_trello_comment_receipts_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    dedupe_key: Mapped[str] = mapped_column(String(200), nullable=False)
    card_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
