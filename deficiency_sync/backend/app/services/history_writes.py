# backend/app/services/history_writes.py
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import session_scope
from ..domain.deficiencies.dates import day_to_unix
from ..domain.deficiencies.errors import InvalidArgument, PersistenceFailure
from ..models import DEFICIENCY_STATES, HISTORY_LOGS, DeficientItem, Property

# -----------------------------------------------------------------------------
# Producer side of the history logs.
#
# Every user-visible write takes one WriteStamp: the deficiency's
# write_version is bumped once and every entry appended by that write records
# the same version. Published events carry it too, so a handler can tell
# which entries the write behind its event appended.
# -----------------------------------------------------------------------------


class SyncPublisher(Protocol):
    def state_changed(
        self, property_id: str, deficiency_id: str, state: str, write_version: Optional[int] = None
    ) -> None: ...

    def due_date_changed(
        self, property_id: str, deficiency_id: str, state: str, write_version: Optional[int] = None
    ) -> None: ...

    def progress_note_added(self, property_id: str, deficiency_id: str, entry_id: str) -> None: ...

    def completed_photo_added(self, property_id: str, deficiency_id: str, entry_id: str) -> None: ...


@dataclass(frozen=True)
class WriteStamp:
    version: int
    at: float


def _now() -> float:
    return time.time()


def new_entry_id() -> str:
    return uuid.uuid4().hex


def _property_timezone(db: Session, deficiency: DeficientItem) -> str:
    prop = db.get(Property, deficiency.property_id)
    return (prop.timezone if prop is not None else None) or settings.default_timezone


def stamp_write(deficiency: DeficientItem, *, now: Optional[float] = None) -> WriteStamp:
    at = float(now if now is not None else _now())
    version = int(deficiency.write_version or 0) + 1
    deficiency.write_version = version
    deficiency.updated_at = at
    return WriteStamp(version=version, at=at)


def append_history_entry(
    deficiency: DeficientItem,
    log_name: str,
    payload: dict[str, Any],
    *,
    stamp: Optional[WriteStamp] = None,
    now: Optional[float] = None,
) -> str:
    """
    Append only: existing entries are carried over untouched. Without a
    stamp this is a write of its own and bumps the deficiency's version.
    """
    if log_name not in HISTORY_LOGS:
        raise InvalidArgument(f"unknown history log: {log_name}")
    if stamp is None:
        stamp = stamp_write(deficiency, now=now)

    entries = deficiency.get_log(log_name)
    entry_id = new_entry_id()
    while entry_id in entries:
        entry_id = new_entry_id()

    entries[entry_id] = {**payload, "created_at": stamp.at, "write_version": stamp.version}
    deficiency.set_log(log_name, entries)
    return entry_id


def _commit(db: Session, deficiency: DeficientItem) -> None:
    try:
        with session_scope(db):
            db.add(deficiency)
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"history write: failed to persist deficiency {deficiency.id} | {e}") from e


def _publisher(publisher: Optional[SyncPublisher]) -> SyncPublisher:
    if publisher is not None:
        return publisher
    from ..workers.trello_tasks import celery_publisher

    return celery_publisher


def update_deficiency(
    db: Session,
    deficiency: DeficientItem,
    *,
    user_id: str,
    state: Optional[str] = None,
    due_date_day: Optional[str] = None,
    deferred_date_day: Optional[str] = None,
    plan_to_fix: Optional[str] = None,
    reason_incomplete: Optional[str] = None,
    responsibility_group: Optional[str] = None,
    progress_note: Optional[str] = None,
    now: Optional[float] = None,
    publisher: Optional[SyncPublisher] = None,
) -> dict[str, str]:
    """
    One user write against a deficiency.

    Appends an entry to each log the write touches, updates the denormalized
    current_* fields, commits, then publishes:
      - a state change event whenever `state` is given (same state included)
      - a due date event when only a due/deferred date is written
      - a progress note event for a new note

    Returns {log_name: new_entry_id}.
    """
    if not user_id:
        raise InvalidArgument("user_id required")
    if state is not None and state not in DEFICIENCY_STATES:
        raise InvalidArgument(f"unknown deficiency state: {state}")

    # Validate days before anything on the row changes
    tz = _property_timezone(db, deficiency) if (due_date_day or deferred_date_day) else None
    due_ts = day_to_unix(due_date_day, tz) if due_date_day else None
    deferred_ts = day_to_unix(deferred_date_day, tz) if deferred_date_day else None

    stamp = stamp_write(deficiency, now=now)
    created: dict[str, str] = {}

    if due_date_day:
        created["due_dates"] = append_history_entry(
            deficiency,
            "due_dates",
            {"due_date": due_ts, "due_date_day": due_date_day, "user": user_id},
            stamp=stamp,
        )
        deficiency.current_due_date_day = due_date_day

    if deferred_date_day:
        created["deferred_dates"] = append_history_entry(
            deficiency,
            "deferred_dates",
            {
                "deferred_date": deferred_ts,
                "deferred_date_day": deferred_date_day,
                "user": user_id,
            },
            stamp=stamp,
        )
        deficiency.current_deferred_date_day = deferred_date_day

    if progress_note:
        created["progress_notes"] = append_history_entry(
            deficiency,
            "progress_notes",
            {"progress_note": progress_note, "user": user_id},
            stamp=stamp,
        )

    if plan_to_fix is not None:
        deficiency.current_plan_to_fix = plan_to_fix
    if reason_incomplete is not None:
        deficiency.current_reason_incomplete = reason_incomplete
    if responsibility_group is not None:
        deficiency.current_responsibility_group = responsibility_group

    if state is not None:
        created["state_history"] = append_history_entry(
            deficiency,
            "state_history",
            {"state": state, "user": user_id},
            stamp=stamp,
        )
        deficiency.state = state

    _commit(db, deficiency)

    pub = _publisher(publisher)
    if "progress_notes" in created:
        pub.progress_note_added(deficiency.property_id, deficiency.id, created["progress_notes"])
    # Events carry the write version so handlers match the write, not the row
    if state is not None:
        pub.state_changed(deficiency.property_id, deficiency.id, deficiency.state, write_version=stamp.version)
    elif "due_dates" in created or "deferred_dates" in created:
        pub.due_date_changed(deficiency.property_id, deficiency.id, deficiency.state, write_version=stamp.version)

    return created


def transition_state(db: Session, deficiency: DeficientItem, *, user_id: str, state: str, **kwargs: Any) -> str:
    return update_deficiency(db, deficiency, user_id=user_id, state=state, **kwargs)["state_history"]


def set_due_date(db: Session, deficiency: DeficientItem, *, user_id: str, day: str, **kwargs: Any) -> str:
    if not day:
        raise InvalidArgument("due date day required")
    return update_deficiency(db, deficiency, user_id=user_id, due_date_day=day, **kwargs)["due_dates"]


def set_deferred_date(db: Session, deficiency: DeficientItem, *, user_id: str, day: str, **kwargs: Any) -> str:
    if not day:
        raise InvalidArgument("deferred date day required")
    return update_deficiency(db, deficiency, user_id=user_id, deferred_date_day=day, **kwargs)["deferred_dates"]


def add_progress_note(db: Session, deficiency: DeficientItem, *, user_id: str, note: str, **kwargs: Any) -> str:
    if not note:
        raise InvalidArgument("progress note text required")
    return update_deficiency(db, deficiency, user_id=user_id, progress_note=note, **kwargs)["progress_notes"]


def add_completed_photo(
    db: Session,
    deficiency: DeficientItem,
    *,
    user_id: str,
    download_url: str,
    storage_path: Optional[str] = None,
    now: Optional[float] = None,
    publisher: Optional[SyncPublisher] = None,
) -> str:
    if not user_id:
        raise InvalidArgument("user_id required")
    if not download_url:
        raise InvalidArgument("download_url required")

    stamp = stamp_write(deficiency, now=now)
    payload: dict[str, Any] = {"download_url": download_url, "user": user_id}
    if storage_path:
        payload["storage_path"] = storage_path
    entry_id = append_history_entry(deficiency, "completed_photos", payload, stamp=stamp)

    _commit(db, deficiency)
    _publisher(publisher).completed_photo_added(deficiency.property_id, deficiency.id, entry_id)
    return entry_id


def set_completed_photo_attachment(
    db: Session,
    deficiency: DeficientItem,
    *,
    entry_id: str,
    attachment_id: str,
) -> None:
    """
    The one in-place annotation a history entry accepts: the Trello
    attachment id of an already published photo. Not a user write, so
    write_version and updated_at are left alone.
    """
    if not entry_id or not attachment_id:
        raise InvalidArgument("entry_id and attachment_id required")

    try:
        with session_scope(db):
            # Re-read under lock so a concurrent append isn't clobbered
            db.refresh(deficiency, with_for_update=True)
            photos = deficiency.get_log("completed_photos")
            entry = photos.get(entry_id)
            if not isinstance(entry, dict):
                raise InvalidArgument(f"completed photo {entry_id} not found on deficiency {deficiency.id}")
            entry["trello_card_attachment"] = attachment_id
            deficiency.set_log("completed_photos", photos)
            db.add(deficiency)
    except SQLAlchemyError as e:
        raise PersistenceFailure(
            f"history write: failed to store attachment {attachment_id} on photo {entry_id} | {e}"
        ) from e
