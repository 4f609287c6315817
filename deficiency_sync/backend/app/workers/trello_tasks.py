# backend/app/workers/trello_tasks.py
from __future__ import annotations

import logging
import random
from typing import Any, Callable, Optional

from ..clients.trello import TrelloClient
from ..config import settings
from ..db import SessionLocal
from ..domain.deficiencies.errors import ExternalAPIFailure, MalformedEvent, PersistenceFailure
from ..domain.deficiencies.events import StateChangeEvent, decode_state_event, encode_state_event
from ..services.trello_card_lifecycle import toggle_archive
from ..services.trello_sync import (
    SyncContext,
    SyncResult,
    attach_completed_photo,
    close_card,
    post_progress_note,
    post_state_comment,
    sync_due_date,
)
from .celery_app import celery_app

log = logging.getLogger("deficiency_sync.tasks")

RETRYABLE = (ExternalAPIFailure, PersistenceFailure)

_context: Optional[SyncContext] = None


def get_context() -> SyncContext:
    """One Trello client and template selector per worker process."""
    global _context
    if _context is None:
        _context = SyncContext.from_settings(TrelloClient())
    return _context


def _backoff_seconds(retries: int) -> int:
    """
    Exponential backoff with jitter.
    retries is the current retry count (0 for first retry attempt).
    """
    base = int(settings.sync_retry_base_seconds or 5)
    cap = int(settings.sync_retry_max_seconds or 300)

    delay = min(cap, base * (2 ** max(0, int(retries))))

    # jitter: +/- 20%
    jitter = int(delay * 0.2)
    if jitter > 0:
        delay = max(1, delay + random.randint(-jitter, jitter))
    return delay


def _decode(task_name: str, message: Any) -> StateChangeEvent:
    try:
        return decode_state_event(message)
    except MalformedEvent:
        # Redelivery can't fix a bad payload; surface it and let the task fail
        log.exception(f"{task_name}: malformed state event {message!r}", extra={"handler": task_name})
        raise


def _run(task: Any, handler: Callable[..., SyncResult], **kwargs: Any) -> dict:
    db = SessionLocal()
    try:
        result = handler(db, get_context(), **kwargs)
        return {"ok": True, "handler": result.handler, "action": result.action, "reason": result.reason}
    except RETRYABLE as e:
        retries = int(getattr(task.request, "retries", 0) or 0)
        delay = _backoff_seconds(retries=retries)
        log.warning(
            f"{task.name}: {type(e).__name__}, retry {retries + 1} in {delay}s | {e}",
            extra={"handler": task.name, "deficiency_id": kwargs.get("deficiency_id")},
        )
        raise task.retry(exc=e, countdown=delay)
    finally:
        db.close()


# -----------------------------
# State change subscribers
# -----------------------------
# Every subscriber takes the same call: the encoded message plus the version
# of the write that published it. Only the due date handler needs the version.
@celery_app.task(bind=True, max_retries=settings.sync_max_retries, name="app.workers.trello_tasks.close_card_task")
def close_card_task(self, message: str, write_version: Optional[int] = None) -> dict:
    ev = _decode(self.name, message)
    return _run(self, close_card, property_id=ev.property_id, deficiency_id=ev.deficiency_id, state=ev.state)


@celery_app.task(bind=True, max_retries=settings.sync_max_retries, name="app.workers.trello_tasks.state_comment_task")
def state_comment_task(self, message: str, write_version: Optional[int] = None) -> dict:
    ev = _decode(self.name, message)
    return _run(self, post_state_comment, property_id=ev.property_id, deficiency_id=ev.deficiency_id, state=ev.state)


@celery_app.task(bind=True, max_retries=settings.sync_max_retries, name="app.workers.trello_tasks.due_date_task")
def due_date_task(self, message: str, write_version: Optional[int] = None) -> dict:
    ev = _decode(self.name, message)
    return _run(
        self,
        sync_due_date,
        property_id=ev.property_id,
        deficiency_id=ev.deficiency_id,
        state=ev.state,
        write_version=write_version,
    )


STATE_SUBSCRIBERS = (close_card_task, state_comment_task, due_date_task)


# -----------------------------
# Entry subscribers
# -----------------------------
@celery_app.task(bind=True, max_retries=settings.sync_max_retries, name="app.workers.trello_tasks.completed_photo_task")
def completed_photo_task(self, property_id: str, deficiency_id: str, entry_id: Optional[str] = None) -> dict:
    return _run(self, attach_completed_photo, property_id=property_id, deficiency_id=deficiency_id, entry_id=entry_id)


@celery_app.task(bind=True, max_retries=settings.sync_max_retries, name="app.workers.trello_tasks.progress_note_task")
def progress_note_task(self, property_id: str, deficiency_id: str, entry_id: Optional[str] = None) -> dict:
    return _run(self, post_progress_note, property_id=property_id, deficiency_id=deficiency_id, entry_id=entry_id)


@celery_app.task(bind=True, max_retries=settings.sync_max_retries, name="app.workers.trello_tasks.archive_card_task")
def archive_card_task(self, deficiency_id: str, archive: bool) -> dict:
    db = SessionLocal()
    try:
        return {"ok": True, **toggle_archive(db, get_context().trello, deficiency_id=deficiency_id, archive=bool(archive))}
    except RETRYABLE as e:
        retries = int(getattr(self.request, "retries", 0) or 0)
        raise self.retry(exc=e, countdown=_backoff_seconds(retries=retries))
    finally:
        db.close()


# -----------------------------
# Publishing
# -----------------------------
def _version_kwargs(write_version: Optional[int]) -> dict:
    return {"write_version": int(write_version)} if write_version is not None else {}


def publish_state_change(property_id: str, deficiency_id: str, state: str, write_version: Optional[int] = None) -> str:
    """
    Encode once, fan the same message out to every state subscriber. The
    write version travels as a task kwarg; the message format is unchanged.
    """
    message = encode_state_event(property_id, deficiency_id, state)
    for task in STATE_SUBSCRIBERS:
        task.apply_async(args=[message], kwargs=_version_kwargs(write_version))
    return message


def publish_due_date_change(property_id: str, deficiency_id: str, state: str, write_version: Optional[int] = None) -> str:
    """Date-only writes: same message, due date subscriber only."""
    message = encode_state_event(property_id, deficiency_id, state)
    due_date_task.apply_async(args=[message], kwargs=_version_kwargs(write_version))
    return message


class CeleryPublisher:
    def state_changed(
        self, property_id: str, deficiency_id: str, state: str, write_version: Optional[int] = None
    ) -> None:
        publish_state_change(property_id, deficiency_id, state, write_version)

    def due_date_changed(
        self, property_id: str, deficiency_id: str, state: str, write_version: Optional[int] = None
    ) -> None:
        publish_due_date_change(property_id, deficiency_id, state, write_version)

    def progress_note_added(self, property_id: str, deficiency_id: str, entry_id: str) -> None:
        progress_note_task.apply_async(args=[property_id, deficiency_id, entry_id])

    def completed_photo_added(self, property_id: str, deficiency_id: str, entry_id: str) -> None:
        completed_photo_task.apply_async(args=[property_id, deficiency_id, entry_id])


celery_publisher = CeleryPublisher()
