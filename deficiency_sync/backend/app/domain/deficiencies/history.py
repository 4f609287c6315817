# backend/app/domain/deficiencies/history.py
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

# -----------------------------------------------------------------------------
# History resolver
# -----------------------------------------------------------------------------
# A deficient item carries several append-only logs ({entry_id: payload}).
# Writers are not coordinated, so the only ordering we trust is each entry's
# own numeric `created_at`. Entries without one are ignored entirely.
#
# Ties on `created_at` are broken by entry id, descending, so two reads of
# the same log always agree on "current".
# -----------------------------------------------------------------------------


def _is_timestamp(v: Any) -> bool:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return False
    return not math.isnan(v)


@dataclass(frozen=True)
class HistoryView:
    log_name: str
    entries: tuple[tuple[str, dict[str, Any]], ...] = field(default_factory=tuple)

    @property
    def current(self) -> Optional[dict[str, Any]]:
        return self.entries[0][1] if self.entries else None

    @property
    def previous(self) -> Optional[dict[str, Any]]:
        return self.entries[1][1] if len(self.entries) > 1 else None

    @property
    def current_id(self) -> Optional[str]:
        return self.entries[0][0] if self.entries else None

    def id_of(self, entry: Any) -> Optional[str]:
        """
        Key an entry was stored under, matched by object identity.
        Two equal payloads under different ids are still distinguishable.
        """
        if entry is None:
            return None
        for entry_id, payload in self.entries:
            if payload is entry:
                return entry_id
        return None

    def __len__(self) -> int:
        return len(self.entries)


def resolve_history(document: Optional[Mapping[str, Any]], log_name: str) -> HistoryView:
    """
    Descending-time view over one history log of a deficiency document.

    Missing document, missing log or a non-mapping log all resolve to an
    empty view (current = previous = None). Pure read; the document is not
    modified and returned entries are the document's own payload objects.
    """
    if not document:
        return HistoryView(log_name=log_name)

    log = document.get(log_name)
    if not isinstance(log, Mapping):
        return HistoryView(log_name=log_name)

    valid = [
        (str(entry_id), payload)
        for entry_id, payload in log.items()
        if isinstance(payload, dict) and _is_timestamp(payload.get("created_at"))
    ]
    valid.sort(key=lambda kv: (kv[1]["created_at"], kv[0]), reverse=True)
    return HistoryView(log_name=log_name, entries=tuple(valid))
