# backend/app/services/overdue_sweep.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..domain.deficiencies.errors import PersistenceFailure
from ..domain.deficiencies.history import resolve_history
from ..models import DeficientItem
from .deficiency_store import DeficiencyStore
from .history_writes import SyncPublisher, transition_state

# -----------------------------------------------------------------------------
# Overdue sweep
# -----------------------------------------------------------------------------
# Periodic pass over active deficiencies in overdue-eligible states:
#   - past its due date          -> "overdue"
#   - "pending", past the halfway point between start and due, with a span of
#     at least five days and no progress note since work started
#                                -> "requires-progress-update"
#
# Every transition is an ordinary write by the system user, so it appends a
# state history entry and publishes a state change like any other.
# -----------------------------------------------------------------------------

log = logging.getLogger("deficiency_sync.overdue_sweep")

PREFIX = "overdue sweep:"

PROGRESS_UPDATE_MIN_SPAN_SECONDS = 5 * 24 * 60 * 60


@dataclass
class OverdueSweepResult:
    scanned: int = 0
    overdue: list[str] = field(default_factory=list)
    requires_progress_update: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "overdue": list(self.overdue),
            "requires_progress_update": list(self.requires_progress_update),
            "failed": list(self.failed),
        }


def current_due_seconds(deficiency: DeficientItem) -> Optional[float]:
    entry = resolve_history(deficiency.as_document(), "due_dates").current
    due = entry.get("due_date") if entry else None
    if isinstance(due, bool) or not isinstance(due, (int, float)):
        return None
    return float(due)


def current_start_seconds(deficiency: DeficientItem) -> Optional[float]:
    """When work started: the latest move to "pending"."""
    for _, entry in resolve_history(deficiency.as_document(), "state_history").entries:
        if entry.get("state") == "pending":
            return float(entry["created_at"])
    return None


def _has_progress_note_since(deficiency: DeficientItem, start: float) -> bool:
    notes = resolve_history(deficiency.as_document(), "progress_notes")
    return any(float(entry["created_at"]) >= start for _, entry in notes.entries)


def next_overdue_state(deficiency: DeficientItem, *, now: float, eligible_states: Iterable[str]) -> Optional[str]:
    """State the sweep should move the deficiency to, or None to leave it."""
    state = deficiency.state
    if state not in set(eligible_states):
        return None

    due = current_due_seconds(deficiency)
    if due is None:
        return None

    seconds_until_due = due - now
    if seconds_until_due <= 0:
        return "overdue"

    if state != "pending":
        return None

    start = current_start_seconds(deficiency)
    if start is None:
        return None

    span = due - start
    if span < PROGRESS_UPDATE_MIN_SPAN_SECONDS or seconds_until_due >= span / 2:
        return None
    if _has_progress_note_since(deficiency, start):
        return None
    return "requires-progress-update"


def sweep_overdue(
    db: Session,
    *,
    now: Optional[float] = None,
    store: Optional[DeficiencyStore] = None,
    publisher: Optional[SyncPublisher] = None,
    eligible_states: Optional[Iterable[str]] = None,
) -> OverdueSweepResult:
    """
    One sweep. A row whose transition fails to commit is logged and skipped;
    the next sweep picks it up again.
    """
    store = store or DeficiencyStore()
    now = float(now if now is not None else time.time())
    eligible = list(eligible_states if eligible_states is not None else settings.overdue_eligible_states)

    try:
        rows = store.active_in_states(db, eligible)
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{PREFIX} failed to look up eligible deficiencies | {e}") from e

    result = OverdueSweepResult(scanned=len(rows))
    for deficiency in rows:
        target = next_overdue_state(deficiency, now=now, eligible_states=eligible)
        if target is None:
            continue

        previous = deficiency.state
        try:
            transition_state(
                db,
                deficiency,
                user_id=settings.system_user_id,
                state=target,
                now=now,
                publisher=publisher,
            )
        except PersistenceFailure:
            log.exception(
                f"{PREFIX} failed to move deficiency to {target}",
                extra={"org_id": deficiency.org_id, "property_id": deficiency.property_id, "deficiency_id": deficiency.id},
            )
            result.failed.append(deficiency.id)
            continue

        log.info(
            f"{PREFIX} deficiency moved {previous} -> {target}",
            extra={"org_id": deficiency.org_id, "property_id": deficiency.property_id, "deficiency_id": deficiency.id},
        )
        if target == "overdue":
            result.overdue.append(deficiency.id)
        else:
            result.requires_progress_update.append(deficiency.id)

    return result
