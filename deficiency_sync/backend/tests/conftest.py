from __future__ import annotations

import os
from typing import Any, Optional

import pytest

# Must be set before app.config builds its Settings
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_deficiency_sync.db")
os.environ.setdefault("APP_ENV", "test")

from app import models  # noqa: E402,F401
from app.clients.trello import TrelloAuth, TrelloCard  # noqa: E402
from app.db import Base, SessionLocal, engine  # noqa: E402
from app.models import (  # noqa: E402
    AppUser,
    DeficientItem,
    Organization,
    Property,
    PropertyTrelloIntegration,
    TrelloCardRef,
    TrelloCredential,
)


class FakeTrello:
    """Records every call; `fail_with` is raised by the next call instead."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any]] = []
        self.fail_with: Optional[Exception] = None
        self.attachment_id = "attachment-1"
        self.created_card_id = "card-new"

    def _call(self, name: str, card_id: str, payload: Any) -> None:
        self.calls.append((name, card_id, payload))
        if self.fail_with is not None:
            raise self.fail_with

    def create_card(self, auth: TrelloAuth, *, list_id, name, desc="", due=None, member_ids=None) -> TrelloCard:
        self._call("create_card", list_id, {"name": name, "desc": desc, "due": due, "member_ids": member_ids})
        return TrelloCard(id=self.created_card_id, short_url=f"https://trello.com/c/{self.created_card_id}", raw={})

    def update_card(self, card_id, auth, updates):
        self._call("update_card", card_id, dict(updates))
        return {"id": card_id}

    def archive_card(self, card_id, auth, *, archiving):
        self._call("archive_card", card_id, {"closed": archiving})
        return {"id": card_id}

    def publish_comment(self, card_id, auth, text):
        self._call("publish_comment", card_id, text)
        return {"id": "comment-1"}

    def publish_attachment(self, card_id, auth, url):
        self._call("publish_attachment", card_id, url)
        return self.attachment_id


class RecordingPublisher:
    """Events as (kind, property, deficiency, state or entry); versions kept alongside."""

    def __init__(self) -> None:
        self.events: list[tuple[str, ...]] = []
        self.write_versions: list[Optional[int]] = []

    def state_changed(self, property_id, deficiency_id, state, write_version=None):
        self.events.append(("state_changed", property_id, deficiency_id, state))
        self.write_versions.append(write_version)

    def due_date_changed(self, property_id, deficiency_id, state, write_version=None):
        self.events.append(("due_date_changed", property_id, deficiency_id, state))
        self.write_versions.append(write_version)

    def progress_note_added(self, property_id, deficiency_id, entry_id):
        self.events.append(("progress_note_added", property_id, deficiency_id, entry_id))

    def completed_photo_added(self, property_id, deficiency_id, entry_id):
        self.events.append(("completed_photo_added", property_id, deficiency_id, entry_id))


@pytest.fixture()
def db_session():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def fake_trello() -> FakeTrello:
    return FakeTrello()


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def seeded(db_session):
    """
    One org with Trello credentials, one property with open + closed lists,
    an author, and an active deficiency that already has card "card-1".
    """
    org = Organization(slug="org-1", name="Org 1")
    db_session.add(org)
    db_session.flush()

    db_session.add_all(
        [
            AppUser(id="user-1", email="jane@example.com", first_name="Jane", last_name="Doe"),
            Property(id="prop-1", org_id=org.id, name="Maple Court", zip="60601", timezone="America/Chicago"),
            TrelloCredential(org_id=org.id, auth_token="tok", api_key="key", member_id="member-1"),
            PropertyTrelloIntegration(
                org_id=org.id, property_id="prop-1", board_id="board-1", open_list_id="list-open", closed_list_id="list-closed"
            ),
        ]
    )
    deficiency = DeficientItem(
        id="def-1",
        org_id=org.id,
        property_id="prop-1",
        state="requires-action",
        item_title="Broken handrail",
        item_score=1.0,
        section_title="Exterior",
        created_at=1_700_000_000.0,
        trello_card_id="card-1",
        trello_card_url="https://trello.com/c/card-1",
    )
    db_session.add(deficiency)
    db_session.add(TrelloCardRef(org_id=org.id, property_id="prop-1", card_id="card-1", deficiency_id="def-1"))
    db_session.commit()
    return {"org": org, "deficiency": deficiency}
