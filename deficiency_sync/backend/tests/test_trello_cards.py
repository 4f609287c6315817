from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from app.domain.deficiencies.errors import PersistenceFailure
from app.services.trello_cards import (
    find_card_ref,
    find_credentials,
    find_deficiency_id,
    find_member_id,
    find_property_integration,
    has_comment_receipt,
    record_comment_receipt,
)


def test_lookups_read_both_directions_and_receipts(db_session, seeded):
    org_id = seeded["org"].id

    assert find_card_ref(db_session, property_id="prop-1", deficiency_id="def-1").card_id == "card-1"
    assert find_deficiency_id(db_session, property_id="prop-1", card_id="card-1") == "def-1"
    assert find_member_id(db_session, org_id=org_id) == "member-1"
    assert find_member_id(db_session, org_id=org_id + 1) is None

    assert not has_comment_receipt(db_session, "state-comment:def-1:e1")
    record_comment_receipt(db_session, dedupe_key="state-comment:def-1:e1", card_id="card-1")
    assert has_comment_receipt(db_session, "state-comment:def-1:e1")


@pytest.mark.parametrize(
    "lookup",
    [
        pytest.param(lambda db: find_card_ref(db, property_id="prop-1", deficiency_id="def-1"), id="card_ref"),
        pytest.param(lambda db: find_deficiency_id(db, property_id="prop-1", card_id="card-1"), id="deficiency_id"),
        pytest.param(lambda db: find_credentials(db, org_id=1), id="credentials"),
        pytest.param(lambda db: find_member_id(db, org_id=1), id="member_id"),
        pytest.param(lambda db: find_property_integration(db, property_id="prop-1"), id="integration"),
        pytest.param(lambda db: has_comment_receipt(db, "progress-note:def-1:n1"), id="comment_receipt"),
    ],
)
def test_database_errors_surface_as_persistence_failure(monkeypatch, db_session, lookup):
    def broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "scalar", broken)

    # PersistenceFailure is what the workers retry on
    with pytest.raises(PersistenceFailure):
        lookup(db_session)
