# backend/app/domain/deficiencies/events.py
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Union

from .errors import MalformedEvent

# Wire shape: "{property_id}/{deficiency_id}/state/{state}", base64 encoded.
# The third segment is a fixed word kept for path shape only.
STATE_SEGMENT = "state"


@dataclass(frozen=True)
class StateChangeEvent:
    property_id: str
    deficiency_id: str
    state: str


def encode_state_event(property_id: str, deficiency_id: str, state: str) -> str:
    for name, v in (("property_id", property_id), ("deficiency_id", deficiency_id), ("state", state)):
        if not isinstance(v, str) or not v.strip() or "/" in v:
            raise MalformedEvent(f"cannot encode event: bad {name} {v!r}")
    raw = f"{property_id}/{deficiency_id}/{STATE_SEGMENT}/{state}"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_state_event(message: Union[str, bytes, None]) -> StateChangeEvent:
    """
    Inverse of encode_state_event.

    Raises MalformedEvent for an empty payload, bad base64/UTF-8, fewer than
    four path segments, or an empty property/deficiency/state.
    """
    if not message:
        raise MalformedEvent("empty state event payload")

    try:
        data = message.encode("ascii") if isinstance(message, str) else bytes(message)
        text = base64.b64decode(data, validate=True).decode("utf-8")
    except (binascii.Error, TypeError, ValueError) as e:
        raise MalformedEvent(f"state event payload is not decodable: {e}") from e

    segments = text.split("/")
    if len(segments) < 4:
        raise MalformedEvent(f"state event has {len(segments)} segments, expected 4: {text!r}")

    property_id, deficiency_id, _, state = (s.strip() for s in segments[:4])
    if not property_id or not deficiency_id or not state:
        raise MalformedEvent(f"state event has empty identifiers: {text!r}")

    return StateChangeEvent(property_id=property_id, deficiency_id=deficiency_id, state=state)
