from __future__ import annotations

import pytest

from app.domain.deficiencies.errors import ExternalAPIFailure, MalformedEvent
from app.domain.deficiencies.events import decode_state_event, encode_state_event
from app.services.trello_sync import SyncContext, SyncResult, sync_due_date
from app.workers import trello_tasks


class _Request:
    retries = 2


class _FakeTask:
    name = "app.workers.trello_tasks.fake"
    request = _Request()

    def __init__(self) -> None:
        self.retried_with = None

    def retry(self, exc, countdown):
        self.retried_with = (exc, countdown)
        return RuntimeError("retry scheduled")


def test_publish_state_change_fans_out_one_message(monkeypatch):
    sent = []
    for task in trello_tasks.STATE_SUBSCRIBERS:
        monkeypatch.setattr(
            task, "apply_async", lambda args, kwargs, _name=task.name: sent.append((_name, args, kwargs))
        )

    message = trello_tasks.publish_state_change("prop-1", "def-1", "closed", write_version=7)

    assert [name.rsplit(".", 1)[-1] for name, _, _ in sent] == ["close_card_task", "state_comment_task", "due_date_task"]
    assert all(args == [message] for _, args, _ in sent)
    assert all(kwargs == {"write_version": 7} for _, _, kwargs in sent)
    assert decode_state_event(message).state == "closed"


def test_date_only_change_reaches_due_date_task_alone(monkeypatch):
    sent = []
    for task in trello_tasks.STATE_SUBSCRIBERS:
        monkeypatch.setattr(
            task, "apply_async", lambda args, kwargs, _name=task.name: sent.append((_name, args, kwargs))
        )

    trello_tasks.celery_publisher.due_date_changed("prop-1", "def-1", "pending", write_version=3)

    ((name, args, kwargs),) = sent
    assert name.endswith("due_date_task")
    assert decode_state_event(args[0]).state == "pending"
    assert kwargs == {"write_version": 3}


def test_due_date_task_forwards_event_version(monkeypatch):
    seen = {}

    def fake_run(task, handler, **kwargs):
        seen.update(kwargs, handler=handler)
        return {"ok": True}

    monkeypatch.setattr(trello_tasks, "_run", fake_run)
    message = encode_state_event("prop-1", "def-1", "pending")

    trello_tasks.due_date_task.run(message, write_version=4)

    assert seen["handler"] is sync_due_date
    assert seen["write_version"] == 4
    assert seen["deficiency_id"] == "def-1"


def test_celery_publisher_enqueues_entry_tasks(monkeypatch):
    sent = []
    monkeypatch.setattr(trello_tasks.progress_note_task, "apply_async", lambda args: sent.append(("note", args)))
    monkeypatch.setattr(trello_tasks.completed_photo_task, "apply_async", lambda args: sent.append(("photo", args)))

    trello_tasks.celery_publisher.progress_note_added("prop-1", "def-1", "n1")
    trello_tasks.celery_publisher.completed_photo_added("prop-1", "def-1", "p1")

    assert sent == [("note", ["prop-1", "def-1", "n1"]), ("photo", ["prop-1", "def-1", "p1"])]


def test_malformed_event_is_raised_not_retried():
    with pytest.raises(MalformedEvent):
        trello_tasks._decode("close_card_task", "")


def test_external_failure_schedules_backoff_retry(monkeypatch, db_session, fake_trello):
    monkeypatch.setattr(trello_tasks, "get_context", lambda: SyncContext(trello=fake_trello))

    def failing(db, ctx, **kwargs):
        raise ExternalAPIFailure("Trello API error 503", status_code=503)

    task = _FakeTask()
    with pytest.raises(RuntimeError, match="retry scheduled"):
        trello_tasks._run(task, failing, property_id="prop-1", deficiency_id="def-1")

    exc, countdown = task.retried_with
    assert isinstance(exc, ExternalAPIFailure)
    assert countdown >= 1


def test_run_reports_handler_result(monkeypatch, db_session, fake_trello):
    monkeypatch.setattr(trello_tasks, "get_context", lambda: SyncContext(trello=fake_trello))

    out = trello_tasks._run(
        _FakeTask(), lambda db, ctx, **kw: SyncResult(handler="close_card", action="noop", reason="state_not_closing")
    )

    assert out == {"ok": True, "handler": "close_card", "action": "noop", "reason": "state_not_closing"}


def test_backoff_is_exponential_and_capped(monkeypatch):
    monkeypatch.setattr(trello_tasks.settings, "sync_retry_base_seconds", 10)
    monkeypatch.setattr(trello_tasks.settings, "sync_retry_max_seconds", 60)

    assert 8 <= trello_tasks._backoff_seconds(0) <= 12
    assert 32 <= trello_tasks._backoff_seconds(2) <= 48
    assert trello_tasks._backoff_seconds(10) <= 72
