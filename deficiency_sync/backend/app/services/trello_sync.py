# backend/app/services/trello_sync.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..clients.trello import TicketingClient, TrelloAuth
from ..config import settings
from ..domain.deficiencies.comment_templates import PROGRESS_NOTE_TEMPLATE, CommentTemplateSelector
from ..domain.deficiencies.comments import render_comment
from ..domain.deficiencies.dates import day_to_iso8601, unix_to_date_string
from ..domain.deficiencies.errors import CardDeleted, InvalidArgument, InvalidHistoryEntry, PersistenceFailure
from ..domain.deficiencies.history import HistoryView, resolve_history
from ..models import AppUser, DeficientItem, Property
from .deficiency_store import DeficiencyStore
from .history_writes import set_completed_photo_attachment
from .trello_cards import (
    cleanup_deleted_card,
    find_card_ref,
    find_credentials,
    find_property_integration,
    has_comment_receipt,
    record_comment_receipt,
)

# -----------------------------------------------------------------------------
# Trello sync handlers
# -----------------------------------------------------------------------------
# One function per subscriber. Each is invoked once per delivered event and
# re-reads everything it needs; the event's state is only a pre-check.
#
# Expected absences (no card, no credentials, no deficiency, bad history
# entry) return a no-op SyncResult. Trello 404 runs stale-reference cleanup
# and abandons the operation. ExternalAPIFailure / PersistenceFailure
# propagate so the bus redelivers.
#
# Write sets are disjoint: comments write only receipts, the photo handler
# writes only its own entry's attachment id, cleanup only removes references.
# -----------------------------------------------------------------------------

CLOSING_STATES = frozenset({"closed", "completed"})

HANDLER_CLOSE = "close_card"
HANDLER_STATE_COMMENT = "state_comment"
HANDLER_DUE_DATE = "due_date"
HANDLER_COMPLETED_PHOTO = "completed_photo"
HANDLER_PROGRESS_NOTE = "progress_note"


def _log(handler: str) -> logging.Logger:
    return logging.getLogger(f"deficiency_sync.{handler}")


@dataclass(frozen=True)
class SyncResult:
    handler: str
    action: str  # updated|commented|attached|noop|card_deleted
    reason: Optional[str] = None
    card_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def noop(self) -> bool:
        return self.action == "noop"


@dataclass
class SyncContext:
    """Collaborators built once per worker and handed to every handler."""

    trello: TicketingClient
    templates: CommentTemplateSelector = field(default_factory=CommentTemplateSelector)
    store: DeficiencyStore = field(default_factory=DeficiencyStore)
    initial_state: str = field(default_factory=lambda: settings.deficiency_initial_state)
    default_timezone: str = field(default_factory=lambda: settings.default_timezone)
    responsibility_groups: dict[str, str] = field(default_factory=lambda: dict(settings.responsibility_groups))

    @classmethod
    def from_settings(cls, trello: TicketingClient) -> "SyncContext":
        return cls(trello=trello, templates=CommentTemplateSelector.from_path(settings.comment_templates_path))


@dataclass(frozen=True)
class SyncTarget:
    org_id: int
    property_id: str
    card_id: str
    auth: TrelloAuth
    deficiency: DeficientItem
    document: dict[str, Any]
    timezone: Optional[str]


def _noop(handler: str, reason: str, *, card_id: Optional[str] = None, level: int = logging.INFO, **extra: Any) -> SyncResult:
    _log(handler).log(level, f"{handler}: no-op, {reason}", extra={"handler": handler, "card_id": card_id, **extra})
    return SyncResult(handler=handler, action="noop", reason=reason, card_id=card_id)


def load_target(
    db: Session,
    ctx: SyncContext,
    *,
    handler: str,
    property_id: str,
    deficiency_id: str,
) -> Union[SyncTarget, SyncResult]:
    """
    Common preamble: card reference, organization credentials, current
    deficiency. Any missing piece is an expected absence and comes back as a
    no-op SyncResult instead of a target.
    """
    ids = {"property_id": property_id, "deficiency_id": deficiency_id}

    ref = find_card_ref(db, property_id=property_id, deficiency_id=deficiency_id)
    if ref is None:
        return _noop(handler, "deficiency has no Trello card", **ids)

    auth = find_credentials(db, org_id=ref.org_id)
    if auth is None:
        return _noop(handler, "organization has no Trello credentials", card_id=ref.card_id, level=logging.WARNING, org_id=ref.org_id, **ids)

    try:
        deficiency = ctx.store.find_active(db, deficiency_id)
        prop = db.get(Property, property_id)
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{handler}: deficiency lookup failed | {e}") from e

    if deficiency is None:
        return _noop(handler, "deficiency not found", card_id=ref.card_id, level=logging.WARNING, **ids)
    if deficiency.property_id != property_id:
        return _noop(handler, "deficiency belongs to another property", card_id=ref.card_id, level=logging.ERROR, **ids)

    return SyncTarget(
        org_id=int(ref.org_id),
        property_id=property_id,
        card_id=ref.card_id,
        auth=auth,
        deficiency=deficiency,
        document=deficiency.as_document(),
        timezone=prop.timezone if prop is not None else None,
    )


def _on_card_deleted(db: Session, ctx: SyncContext, handler: str, target: SyncTarget, err: CardDeleted) -> SyncResult:
    _log(handler).warning(
        f"{handler}: Trello card is gone, cleaning up references | {err}",
        extra={"handler": handler, "deficiency_id": target.deficiency.id, "card_id": target.card_id},
    )
    # PersistenceFailure here propagates: the bus retries the cleanup
    cleanup_deleted_card(db, deficiency_id=target.deficiency.id, card_id=target.card_id, store=ctx.store)
    return SyncResult(handler=handler, action="card_deleted", reason="card_deleted", card_id=target.card_id)


def _user_fields(db: Session, handler: str, user_id: Optional[str]) -> dict[str, Any]:
    user = db.get(AppUser, user_id) if user_id else None
    if user is None:
        _log(handler).warning(f"{handler}: author {user_id!r} not found, comment left unsigned", extra={"handler": handler})
        return {}
    return {"first_name": user.first_name, "last_name": user.last_name, "email": user.email}


def _entry_by_id(view: HistoryView, entry_id: Optional[str]) -> Optional[dict[str, Any]]:
    if not entry_id:
        return view.current
    for eid, payload in view.entries:
        if eid == entry_id:
            return payload
    return None


def is_triggering_write(
    deficiency: DeficientItem,
    entry: Optional[dict[str, Any]],
    write_version: Optional[int] = None,
) -> bool:
    """
    True when the entry was appended by the write behind the event.

    Entries carry the write_version of the write that appended them. When the
    event carries a version the two are compared exactly, so later writes to
    the row don't hide it. Events without one compare against the row's
    latest version; entries without one fall back to created_at == updated_at.
    """
    if not entry:
        return False
    version = entry.get("write_version")
    if isinstance(version, int) and not isinstance(version, bool):
        if write_version is not None:
            return version == int(write_version)
        return version == int(deficiency.write_version or 0)
    return deficiency.updated_at is not None and entry.get("created_at") == deficiency.updated_at


# -----------------------------
# Close / move
# -----------------------------
def close_card(db: Session, ctx: SyncContext, *, property_id: str, deficiency_id: str, state: str) -> SyncResult:
    handler = HANDLER_CLOSE
    if state not in CLOSING_STATES:
        return SyncResult(handler=handler, action="noop", reason="state_not_closing")

    target = load_target(db, ctx, handler=handler, property_id=property_id, deficiency_id=deficiency_id)
    if isinstance(target, SyncResult):
        return target

    current_state = target.deficiency.state
    if current_state not in CLOSING_STATES:
        return _noop(handler, f"deficiency moved on to {current_state}", card_id=target.card_id, deficiency_id=deficiency_id)

    updates: dict[str, Any] = {}
    if current_state == "closed":
        integration = find_property_integration(db, property_id=property_id)
        if integration is not None and integration.closed_list_id:
            updates["idList"] = integration.closed_list_id

    # A due date may have been put on the card earlier; always mark it done
    if target.deficiency.get_log("due_dates") or target.deficiency.get_log("deferred_dates"):
        updates["dueComplete"] = True

    if not updates:
        return _noop(handler, "nothing to update on card", card_id=target.card_id, deficiency_id=deficiency_id)

    try:
        ctx.trello.update_card(target.card_id, target.auth, updates)
    except CardDeleted as e:
        return _on_card_deleted(db, ctx, handler, target, e)

    _log(handler).info(
        f"{handler}: updated card",
        extra={"handler": handler, "deficiency_id": deficiency_id, "card_id": target.card_id},
    )
    return SyncResult(handler=handler, action="updated", card_id=target.card_id, payload=updates)


# -----------------------------
# State change comment
# -----------------------------
def _validate_state_entry(entry: Optional[dict[str, Any]]) -> tuple[str, str]:
    if not isinstance(entry, dict):
        raise InvalidHistoryEntry("no current state history entry")
    user_id, state = entry.get("user"), entry.get("state")
    if not isinstance(user_id, str) or not user_id:
        raise InvalidHistoryEntry("state history entry has no user")
    if not isinstance(state, str) or not state:
        raise InvalidHistoryEntry("state history entry has no state")
    return user_id, state


def _date_fields(target: SyncTarget, ctx: SyncContext) -> dict[str, Any]:
    def fmt(entry: Optional[dict[str, Any]], key: str) -> Optional[str]:
        if not entry or entry.get(key) is None:
            return None
        return unix_to_date_string(entry.get(key), target.timezone, fallback_tz=ctx.default_timezone)

    due = resolve_history(target.document, "due_dates")
    deferred = resolve_history(target.document, "deferred_dates")
    return {
        "current_due_date_day": fmt(due.current, "due_date") or target.deficiency.current_due_date_day,
        "previous_due_date_day": fmt(due.previous, "due_date"),
        "current_deferred_date_day": fmt(deferred.current, "deferred_date")
        or target.deficiency.current_deferred_date_day,
    }


def post_state_comment(
    db: Session,
    ctx: SyncContext,
    *,
    property_id: str,
    deficiency_id: str,
    state: Optional[str] = None,
) -> SyncResult:
    handler = HANDLER_STATE_COMMENT
    target = load_target(db, ctx, handler=handler, property_id=property_id, deficiency_id=deficiency_id)
    if isinstance(target, SyncResult):
        return target

    history = resolve_history(target.document, "state_history")
    try:
        user_id, current_state = _validate_state_entry(history.current)
    except InvalidHistoryEntry as e:
        return _noop(handler, f"invalid state history: {e}", card_id=target.card_id, level=logging.ERROR, deficiency_id=deficiency_id)

    previous = history.previous
    previous_state = previous.get("state") if previous and previous.get("state") else ctx.initial_state

    dedupe_key = f"state-comment:{deficiency_id}:{history.current_id}"
    if has_comment_receipt(db, dedupe_key):
        return _noop(handler, "comment already posted", card_id=target.card_id, deficiency_id=deficiency_id)

    d = target.deficiency
    group = d.current_responsibility_group
    progress = resolve_history(target.document, "progress_notes").current
    fields: dict[str, Any] = {
        "previous_state": previous_state,
        "current_state": current_state,
        **_user_fields(db, handler, user_id),
        **_date_fields(target, ctx),
        "current_responsibility_group": ctx.responsibility_groups.get(group, group) if group else None,
        "current_plan_to_fix": d.current_plan_to_fix,
        "current_reason_incomplete": d.current_reason_incomplete,
        "current_progress_note": progress.get("progress_note") if progress else None,
    }

    try:
        template = ctx.templates.first(previous_state, current_state)
    except InvalidArgument as e:
        return _noop(handler, f"no template: {e}", card_id=target.card_id, level=logging.ERROR, deficiency_id=deficiency_id)
    text = render_comment(template, fields)

    try:
        ctx.trello.publish_comment(target.card_id, target.auth, text)
    except CardDeleted as e:
        return _on_card_deleted(db, ctx, handler, target, e)

    record_comment_receipt(db, dedupe_key=dedupe_key, card_id=target.card_id)
    _log(handler).info(
        f"{handler}: posted {previous_state} -> {current_state} comment",
        extra={"handler": handler, "deficiency_id": deficiency_id, "card_id": target.card_id},
    )
    return SyncResult(handler=handler, action="commented", card_id=target.card_id, payload={"text": text})


# -----------------------------
# Due date
# -----------------------------
def sync_due_date(
    db: Session,
    ctx: SyncContext,
    *,
    property_id: str,
    deficiency_id: str,
    state: Optional[str] = None,
    write_version: Optional[int] = None,
) -> SyncResult:
    """
    Mirrors the write that produced the event onto the card due date.
    Branches are exclusive and checked in order: deferred date, due date,
    go-back (clears the due date).

    `write_version` is the version of the write that published the event.
    A later write to the row leaves it valid, so the update is not lost.
    """
    handler = HANDLER_DUE_DATE
    target = load_target(db, ctx, handler=handler, property_id=property_id, deficiency_id=deficiency_id)
    if isinstance(target, SyncResult):
        return target

    d = target.deficiency
    deferred = resolve_history(target.document, "deferred_dates").current
    due = resolve_history(target.document, "due_dates").current
    latest_state = resolve_history(target.document, "state_history").current

    try:
        if deferred and is_triggering_write(d, deferred, write_version):
            day = deferred.get("deferred_date_day") or d.current_deferred_date_day
            updates: dict[str, Any] = {
                "due": day_to_iso8601(day, target.timezone, fallback_tz=ctx.default_timezone),
                "dueComplete": False,
            }
        elif due and is_triggering_write(d, due, write_version):
            day = due.get("due_date_day") or d.current_due_date_day
            updates = {
                "due": day_to_iso8601(day, target.timezone, fallback_tz=ctx.default_timezone),
                "dueComplete": False,
            }
        elif latest_state and latest_state.get("state") == "go-back" and is_triggering_write(d, latest_state, write_version):
            updates = {"due": None, "dueComplete": False}
        else:
            return SyncResult(handler=handler, action="noop", reason="not_a_due_date_write", card_id=target.card_id)
    except InvalidArgument as e:
        return _noop(handler, f"invalid date: {e}", card_id=target.card_id, level=logging.ERROR, deficiency_id=deficiency_id)

    try:
        ctx.trello.update_card(target.card_id, target.auth, updates)
    except CardDeleted as e:
        return _on_card_deleted(db, ctx, handler, target, e)

    _log(handler).info(
        f"{handler}: set card due to {updates['due']}",
        extra={"handler": handler, "deficiency_id": deficiency_id, "card_id": target.card_id},
    )
    return SyncResult(handler=handler, action="updated", card_id=target.card_id, payload=updates)


# -----------------------------
# Completed photo
# -----------------------------
def attach_completed_photo(
    db: Session,
    ctx: SyncContext,
    *,
    property_id: str,
    deficiency_id: str,
    entry_id: Optional[str] = None,
) -> SyncResult:
    handler = HANDLER_COMPLETED_PHOTO
    target = load_target(db, ctx, handler=handler, property_id=property_id, deficiency_id=deficiency_id)
    if isinstance(target, SyncResult):
        return target

    photos = resolve_history(target.document, "completed_photos")
    entry = _entry_by_id(photos, entry_id)
    photo_id = photos.id_of(entry)
    if entry is None or photo_id is None:
        return _noop(handler, f"completed photo {entry_id} not found", card_id=target.card_id, level=logging.WARNING, deficiency_id=deficiency_id)

    # Redelivery guard
    if entry.get("trello_card_attachment"):
        return _noop(handler, "photo already attached", card_id=target.card_id, deficiency_id=deficiency_id)

    url = entry.get("download_url")
    if not url:
        return _noop(handler, "photo has no download url", card_id=target.card_id, level=logging.WARNING, deficiency_id=deficiency_id)

    try:
        attachment_id = ctx.trello.publish_attachment(target.card_id, target.auth, url)
    except CardDeleted as e:
        return _on_card_deleted(db, ctx, handler, target, e)

    set_completed_photo_attachment(db, target.deficiency, entry_id=photo_id, attachment_id=attachment_id)
    _log(handler).info(
        f"{handler}: attached photo {photo_id}",
        extra={"handler": handler, "deficiency_id": deficiency_id, "card_id": target.card_id},
    )
    return SyncResult(
        handler=handler,
        action="attached",
        card_id=target.card_id,
        payload={"entry_id": photo_id, "attachment_id": attachment_id},
    )


# -----------------------------
# Progress note
# -----------------------------
def post_progress_note(
    db: Session,
    ctx: SyncContext,
    *,
    property_id: str,
    deficiency_id: str,
    entry_id: Optional[str] = None,
) -> SyncResult:
    handler = HANDLER_PROGRESS_NOTE
    target = load_target(db, ctx, handler=handler, property_id=property_id, deficiency_id=deficiency_id)
    if isinstance(target, SyncResult):
        return target

    notes = resolve_history(target.document, "progress_notes")
    entry = _entry_by_id(notes, entry_id)
    note_id = notes.id_of(entry)
    if entry is None or note_id is None or not entry.get("progress_note"):
        return _noop(handler, f"progress note {entry_id} missing or empty", card_id=target.card_id, level=logging.WARNING, deficiency_id=deficiency_id)

    dedupe_key = f"progress-note:{deficiency_id}:{note_id}"
    if has_comment_receipt(db, dedupe_key):
        return _noop(handler, "progress note already posted", card_id=target.card_id, deficiency_id=deficiency_id)

    text = render_comment(
        PROGRESS_NOTE_TEMPLATE,
        {**_user_fields(db, handler, entry.get("user")), "progress_note": entry.get("progress_note")},
    )

    try:
        ctx.trello.publish_comment(target.card_id, target.auth, text)
    except CardDeleted as e:
        return _on_card_deleted(db, ctx, handler, target, e)

    record_comment_receipt(db, dedupe_key=dedupe_key, card_id=target.card_id)
    _log(handler).info(
        f"{handler}: posted progress note {note_id}",
        extra={"handler": handler, "deficiency_id": deficiency_id, "card_id": target.card_id},
    )
    return SyncResult(handler=handler, action="commented", card_id=target.card_id, payload={"text": text})
