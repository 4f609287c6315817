# backend/app/services/trello_card_lifecycle.py
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..clients.trello import TicketingClient
from ..config import settings
from ..db import session_scope
from ..domain.deficiencies.comment_templates import CARD_DESCRIPTION_TEMPLATE
from ..domain.deficiencies.comments import render_comment
from ..domain.deficiencies.dates import day_to_iso8601, unix_to_date_string
from ..domain.deficiencies.errors import (
    CardAlreadyExists,
    CardDeleted,
    DeficiencyNotFound,
    IntegrationNotConfigured,
    PersistenceFailure,
)
from ..models import DeficientItem, Property
from .deficiency_store import AnyDeficiency, DeficiencyStore
from .trello_cards import (
    cleanup_deleted_card,
    create_card_ref,
    find_card_ref,
    find_credentials,
    find_member_id,
    find_property_integration,
)

log = logging.getLogger("deficiency_sync.card_lifecycle")

PREFIX = "card lifecycle:"


def deficiency_url(deficiency: AnyDeficiency) -> str:
    return settings.deficiency_url_template.format(
        property_id=deficiency.property_id,
        deficiency_id=deficiency.id,
    )


def card_description(deficiency: DeficientItem, *, timezone: Optional[str]) -> str:
    return render_comment(
        CARD_DESCRIPTION_TEMPLATE,
        {
            "created_at": unix_to_date_string(deficiency.created_at, timezone, fallback_tz=settings.default_timezone),
            "item_score": deficiency.item_score,
            "item_inspector_notes": deficiency.item_inspector_notes,
            "current_plan_to_fix": deficiency.current_plan_to_fix,
            "section_title": deficiency.section_title,
            "section_subtitle": deficiency.section_subtitle,
            "url": deficiency_url(deficiency),
        },
    )


def open_card(
    db: Session,
    trello: TicketingClient,
    *,
    deficiency_id: str,
    store: Optional[DeficiencyStore] = None,
) -> dict[str, Any]:
    """
    Create the Trello card for an active deficiency in its property's open
    list and store the reference (index row + deficiency pointer) in one
    transaction.

    Raises:
      DeficiencyNotFound        no active deficiency
      CardAlreadyExists         the deficiency already has a card
      IntegrationNotConfigured  no credentials or no open list
    """
    store = store or DeficiencyStore()
    deficiency = store.find_active(db, deficiency_id)
    if deficiency is None:
        raise DeficiencyNotFound(f"deficiency {deficiency_id} not found")

    if deficiency.trello_card_id or find_card_ref(db, property_id=deficiency.property_id, deficiency_id=deficiency.id):
        raise CardAlreadyExists(f"deficiency {deficiency_id} already has a Trello card")

    auth = find_credentials(db, org_id=deficiency.org_id)
    if auth is None:
        raise IntegrationNotConfigured("organization has not authorized Trello")

    integration = find_property_integration(db, property_id=deficiency.property_id)
    if integration is None or not integration.open_list_id:
        raise IntegrationNotConfigured(f"property {deficiency.property_id} has no Trello open list")

    prop = db.get(Property, deficiency.property_id)
    tz = prop.timezone if prop is not None else None

    day = deficiency.current_deferred_date_day or deficiency.current_due_date_day
    due = day_to_iso8601(day, tz, fallback_tz=settings.default_timezone) if day else None
    member_id = find_member_id(db, org_id=deficiency.org_id)

    card = trello.create_card(
        auth,
        list_id=integration.open_list_id,
        name=deficiency.item_title or f"Deficient item {deficiency.id}",
        desc=card_description(deficiency, timezone=tz),
        due=due,
        member_ids=[member_id] if member_id else None,
    )

    try:
        with session_scope(db):
            create_card_ref(db, deficiency=deficiency, card_id=card.id, card_url=card.short_url)
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{PREFIX} created card {card.id} but failed to store reference | {e}") from e

    log.info(
        f"{PREFIX} opened Trello card",
        extra={"org_id": deficiency.org_id, "deficiency_id": deficiency.id, "card_id": card.id},
    )
    return {"deficiency_id": deficiency.id, "card_id": card.id, "card_url": card.short_url}


def toggle_archive(
    db: Session,
    trello: Optional[TicketingClient],
    *,
    deficiency_id: str,
    archive: bool,
    store: Optional[DeficiencyStore] = None,
) -> dict[str, Any]:
    """
    Move a deficiency between the active and archive stores and archive or
    restore its Trello card to match. Idempotent: a deficiency already in
    the requested store is not moved again, but the card is still synced.

    A deleted card is cleaned up and does not stop the move.
    """
    store = store or DeficiencyStore()
    located = store.locate(db, deficiency_id)
    if located is None:
        raise DeficiencyNotFound(f"deficiency {deficiency_id} not found")

    row = located.row
    try:
        with session_scope(db):
            if archive and not located.archived:
                row = store.move_to_archive(db, row)
            elif not archive and located.archived:
                row = store.restore_from_archive(db, row)
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{PREFIX} failed to move deficiency {deficiency_id} | {e}") from e

    result: dict[str, Any] = {"deficiency_id": row.id, "archived": archive, "card_id": row.trello_card_id}
    if not row.trello_card_id or trello is None:
        return result

    auth = find_credentials(db, org_id=row.org_id)
    if auth is None:
        log.warning(
            f"{PREFIX} no Trello credentials, card left as is",
            extra={"org_id": row.org_id, "deficiency_id": row.id, "card_id": row.trello_card_id},
        )
        return result

    card_id = row.trello_card_id
    try:
        trello.archive_card(card_id, auth, archiving=archive)
    except CardDeleted:
        cleanup_deleted_card(db, deficiency_id=row.id, card_id=card_id, store=store)
        result["card_id"] = None
        result["card_deleted"] = True
        return result

    log.info(
        f"{PREFIX} {'archived' if archive else 'restored'} Trello card",
        extra={"org_id": row.org_id, "deficiency_id": row.id, "card_id": card_id},
    )
    return result
