# backend/app/services/trello_cards.py
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..clients.trello import TrelloAuth
from ..db import session_scope
from ..domain.deficiencies.errors import PersistenceFailure
from ..models import (
    PropertyTrelloIntegration,
    TrelloCardRef,
    TrelloCommentReceipt,
    TrelloCredential,
)
from .deficiency_store import AnyDeficiency, DeficiencyStore

log = logging.getLogger("deficiency_sync.trello_cards")

PREFIX = "trello cards:"


# -----------------------------
# Lookups
# -----------------------------
def find_card_ref(db: Session, *, property_id: str, deficiency_id: str) -> Optional[TrelloCardRef]:
    try:
        return db.scalar(
            select(TrelloCardRef).where(
                TrelloCardRef.property_id == str(property_id),
                TrelloCardRef.deficiency_id == str(deficiency_id),
            )
        )
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{PREFIX} card reference lookup failed | {e}") from e


def find_card_id(db: Session, *, property_id: str, deficiency_id: str) -> Optional[str]:
    ref = find_card_ref(db, property_id=property_id, deficiency_id=deficiency_id)
    return ref.card_id if ref else None


def find_deficiency_id(db: Session, *, property_id: str, card_id: str) -> Optional[str]:
    """Reverse lookup through the property scoped index."""
    try:
        return db.scalar(
            select(TrelloCardRef.deficiency_id).where(
                TrelloCardRef.property_id == str(property_id),
                TrelloCardRef.card_id == str(card_id),
            )
        )
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{PREFIX} card index lookup failed | {e}") from e


def find_credentials(db: Session, *, org_id: int) -> Optional[TrelloAuth]:
    """None means the organization never authorized Trello; that is not an error."""
    try:
        row = db.scalar(select(TrelloCredential).where(TrelloCredential.org_id == int(org_id)))
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{PREFIX} credentials lookup failed | {e}") from e

    if row is None or not row.auth_token or not row.api_key:
        return None
    return TrelloAuth(auth_token=row.auth_token, api_key=row.api_key)


def find_member_id(db: Session, *, org_id: int) -> Optional[str]:
    try:
        row = db.scalar(select(TrelloCredential).where(TrelloCredential.org_id == int(org_id)))
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{PREFIX} member lookup failed | {e}") from e
    return row.member_id if row is not None else None


def find_property_integration(db: Session, *, property_id: str) -> Optional[PropertyTrelloIntegration]:
    try:
        return db.scalar(
            select(PropertyTrelloIntegration).where(PropertyTrelloIntegration.property_id == str(property_id))
        )
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{PREFIX} property integration lookup failed | {e}") from e


def has_comment_receipt(db: Session, dedupe_key: str) -> bool:
    try:
        found = db.scalar(select(TrelloCommentReceipt.id).where(TrelloCommentReceipt.dedupe_key == dedupe_key))
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{PREFIX} comment receipt lookup failed | {e}") from e
    return found is not None


def record_comment_receipt(db: Session, *, dedupe_key: str, card_id: str) -> None:
    try:
        with session_scope(db):
            db.add(TrelloCommentReceipt(dedupe_key=dedupe_key, card_id=card_id))
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{PREFIX} failed to record comment receipt {dedupe_key} | {e}") from e


# -----------------------------
# Writes
# -----------------------------
def create_card_ref(
    db: Session,
    *,
    deficiency: AnyDeficiency,
    card_id: str,
    card_url: Optional[str],
) -> TrelloCardRef:
    """
    Writes both directions of the reference: the property index row and the
    deficiency's own card pointer.

    NOTE: flush only, the caller commits both together.
    """
    ref = TrelloCardRef(
        org_id=int(deficiency.org_id),
        property_id=str(deficiency.property_id),
        card_id=str(card_id),
        deficiency_id=str(deficiency.id),
    )
    db.add(ref)
    deficiency.trello_card_id = str(card_id)
    deficiency.trello_card_url = card_url
    db.add(deficiency)
    db.flush()
    return ref


def cleanup_deleted_card(
    db: Session,
    *,
    deficiency_id: str,
    card_id: str,
    store: Optional[DeficiencyStore] = None,
) -> bool:
    """
    Compensating cleanup after Trello reported the card gone.

    Removes, in one transaction:
      - every index row pointing at the card or owned by the deficiency
      - the deficiency's card id/URL (active or archived record)
      - attachment references on its completed photo entries

    Returns False when nothing referenced the card. Failures raise
    PersistenceFailure so the bus retries the cleanup.
    """
    store = store or DeficiencyStore()
    changed = False

    try:
        with session_scope(db):
            res = db.execute(
                delete(TrelloCardRef).where(
                    or_(
                        TrelloCardRef.card_id == str(card_id),
                        TrelloCardRef.deficiency_id == str(deficiency_id),
                    )
                )
            )
            changed = bool(res.rowcount)

            located = store.locate(db, deficiency_id)
            if located is not None:
                row = located.row
                if row.trello_card_id or row.trello_card_url:
                    row.trello_card_id = None
                    row.trello_card_url = None
                    changed = True

                photos = row.get_log("completed_photos")
                stripped = False
                for entry in photos.values():
                    if isinstance(entry, dict) and entry.pop("trello_card_attachment", None):
                        stripped = True
                if stripped:
                    row.set_log("completed_photos", photos)
                    changed = True

                db.add(row)
    except SQLAlchemyError as e:
        raise PersistenceFailure(
            f"{PREFIX} failed to cleanup deleted Trello card {card_id} of deficiency {deficiency_id} | {e}"
        ) from e

    log.info(
        f"{PREFIX} removed references to deleted Trello card",
        extra={"deficiency_id": deficiency_id, "card_id": card_id},
    )
    return changed
