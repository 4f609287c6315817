# backend/app/domain/deficiencies/errors.py
from __future__ import annotations

from typing import Optional


class DeficiencySyncError(Exception):
    """Base for every failure raised by the deficiency/Trello sync engine."""


class MalformedEvent(DeficiencySyncError):
    """Bus payload could not be decoded into (property, deficiency, state)."""


class InvalidArgument(DeficiencySyncError, ValueError):
    pass


class InvalidHistoryEntry(DeficiencySyncError):
    pass


class PersistenceFailure(DeficiencySyncError):
    pass


class IntegrationNotConfigured(DeficiencySyncError):
    """Organization credentials or property lists needed for the call are missing."""


class CardAlreadyExists(DeficiencySyncError):
    pass


class TrelloAPIError(DeficiencySyncError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, endpoint: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class CardDeleted(TrelloAPIError):
    """Trello answered 404: the card (or its board) no longer exists."""


class ExternalAPIFailure(TrelloAPIError):
    """Any non-404 Trello failure; safe to redeliver."""


class DeficiencyNotFound(DeficiencySyncError):
    pass
