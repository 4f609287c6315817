from __future__ import annotations

from app.domain.deficiencies.history import resolve_history


def test_history_orders_entries_newest_first():
    doc = {
        "state_history": {
            "a": {"state": "pending", "created_at": 100},
            "b": {"state": "completed", "created_at": 300},
            "c": {"state": "go-back", "created_at": 200},
        }
    }
    view = resolve_history(doc, "state_history")

    assert view.current["state"] == "completed"
    assert view.previous["state"] == "go-back"
    assert view.current_id == "b"
    assert view.current["created_at"] >= view.previous["created_at"]


def test_history_empty_or_absent_log_has_no_current_or_previous():
    for doc in (None, {}, {"state_history": {}}, {"state_history": "not-a-mapping"}):
        view = resolve_history(doc, "state_history")
        assert view.current is None
        assert view.previous is None
        assert len(view) == 0


def test_history_single_entry_has_no_previous():
    view = resolve_history({"due_dates": {"x": {"due_date": 1, "created_at": 5}}}, "due_dates")
    assert view.current == {"due_date": 1, "created_at": 5}
    assert view.previous is None


def test_history_ignores_entries_without_numeric_created_at():
    doc = {
        "progress_notes": {
            "ok": {"progress_note": "fine", "created_at": 10},
            "str": {"progress_note": "bad", "created_at": "10"},
            "bool": {"progress_note": "bad", "created_at": True},
            "missing": {"progress_note": "bad"},
            "scalar": 42,
        }
    }
    view = resolve_history(doc, "progress_notes")
    assert len(view) == 1
    assert view.current_id == "ok"


def test_history_ties_break_on_entry_id_descending():
    doc = {"state_history": {"a": {"state": "x", "created_at": 7}, "b": {"state": "y", "created_at": 7}}}
    first = resolve_history(doc, "state_history")
    reordered = {"state_history": dict(reversed(list(doc["state_history"].items())))}
    second = resolve_history(reordered, "state_history")

    assert first.current_id == "b"
    assert first.previous["state"] == "x"
    assert second.current_id == first.current_id


def test_id_of_matches_by_identity_not_equality():
    same = {"state": "pending", "created_at": 1}
    doc = {"state_history": {"one": same, "two": dict(same)}}
    view = resolve_history(doc, "state_history")

    assert view.id_of(doc["state_history"]["one"]) == "one"
    assert view.id_of(doc["state_history"]["two"]) == "two"
    assert view.id_of({"state": "pending", "created_at": 1}) is None
    assert view.id_of(None) is None


def test_resolve_history_does_not_modify_document():
    log = {"a": {"state": "pending", "created_at": 1}}
    doc = {"state_history": log}
    resolve_history(doc, "state_history")
    assert doc == {"state_history": {"a": {"state": "pending", "created_at": 1}}}
