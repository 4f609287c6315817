# backend/app/schemas.py
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


# -------------------- Health --------------------

class HealthOut(BaseModel):
    ok: bool
    env: str
    version: str


# -------------------- Trello cards --------------------

class TrelloCardOut(BaseModel):
    deficiency_id: str
    card_id: str
    card_url: Optional[str] = None


class ArchiveToggleIn(BaseModel):
    archived: bool


class ArchiveToggleOut(BaseModel):
    deficiency_id: str
    archived: bool
    card_id: Optional[str] = None
    card_deleted: bool = False
