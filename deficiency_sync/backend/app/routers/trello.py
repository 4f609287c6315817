# backend/app/routers/trello.py
from __future__ import annotations

from typing import Iterator

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..clients.trello import TicketingClient, TrelloClient
from ..db import get_db
from ..domain.deficiencies.errors import (
    CardAlreadyExists,
    DeficiencyNotFound,
    IntegrationNotConfigured,
    PersistenceFailure,
    TrelloAPIError,
)
from ..schemas import ArchiveToggleIn, ArchiveToggleOut, TrelloCardOut
from ..services.trello_card_lifecycle import open_card, toggle_archive

router = APIRouter(prefix="/deficiencies", tags=["trello"])


def get_trello() -> Iterator[TicketingClient]:
    with TrelloClient() as client:
        yield client


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, DeficiencyNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (CardAlreadyExists, IntegrationNotConfigured)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, TrelloAPIError):
        return HTTPException(status_code=502, detail=f"Trello: {e}")
    return HTTPException(status_code=500, detail=str(e))


@router.post("/{deficiency_id}/trello/card", response_model=TrelloCardOut, status_code=201)
def create_trello_card(
    deficiency_id: str,
    db: Session = Depends(get_db),
    trello: TicketingClient = Depends(get_trello),
) -> TrelloCardOut:
    try:
        out = open_card(db, trello, deficiency_id=deficiency_id)
    except (DeficiencyNotFound, CardAlreadyExists, IntegrationNotConfigured, TrelloAPIError, PersistenceFailure) as e:
        raise _http_error(e) from e
    return TrelloCardOut(**out)


@router.put("/{deficiency_id}/archived", response_model=ArchiveToggleOut)
def set_archived(
    deficiency_id: str,
    payload: ArchiveToggleIn,
    db: Session = Depends(get_db),
    trello: TicketingClient = Depends(get_trello),
) -> ArchiveToggleOut:
    try:
        out = toggle_archive(db, trello, deficiency_id=deficiency_id, archive=payload.archived)
    except (DeficiencyNotFound, TrelloAPIError, PersistenceFailure) as e:
        raise _http_error(e) from e
    return ArchiveToggleOut(**out)
