from __future__ import annotations

import base64

import pytest

from app.domain.deficiencies.errors import MalformedEvent
from app.domain.deficiencies.events import decode_state_event, encode_state_event


def test_encode_decode_round_trip():
    ev = decode_state_event(encode_state_event("p", "d", "closed"))
    assert (ev.property_id, ev.deficiency_id, ev.state) == ("p", "d", "closed")


def test_wire_format_is_base64_path():
    raw = base64.b64decode(encode_state_event("prop-1", "def-1", "pending")).decode("utf-8")
    assert raw == "prop-1/def-1/state/pending"


def test_decode_accepts_bytes():
    msg = base64.b64encode(b"p/d/anything/completed")
    assert decode_state_event(msg).state == "completed"


@pytest.mark.parametrize(
    "message",
    [
        "",
        None,
        "not base64!!",
        base64.b64encode(b"p/d/state").decode(),
        base64.b64encode(b"p//state/closed").decode(),
        base64.b64encode(b"\xff\xfe/d/state/closed").decode(),
    ],
)
def test_decode_rejects_malformed_payloads(message):
    with pytest.raises(MalformedEvent):
        decode_state_event(message)


def test_encode_rejects_slashes_and_empty_values():
    with pytest.raises(MalformedEvent):
        encode_state_event("p/1", "d", "closed")
    with pytest.raises(MalformedEvent):
        encode_state_event("p", "", "closed")
