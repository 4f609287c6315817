# backend/app/services/deficiency_store.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import ArchivedDeficientItem, DeficientItem

# -----------------------------------------------------------------------------
# Two stores, one source of truth
# -----------------------------------------------------------------------------
# Deficient items live in exactly one of two tables: the active table, or the
# archive table once a user archives them. The active table is authoritative.
# The archive is only consulted when the active row is missing (stale card
# cleanup, unarchiving). A row is moved, never duplicated; if both tables
# ever hold the same id the active row wins and the archive row is ignored.
# -----------------------------------------------------------------------------

AnyDeficiency = Union[DeficientItem, ArchivedDeficientItem]


class DeficiencyRepository(Protocol):
    def get(self, db: Session, deficiency_id: str) -> Optional[AnyDeficiency]: ...

    def add(self, db: Session, row: AnyDeficiency) -> None: ...

    def delete(self, db: Session, row: AnyDeficiency) -> None: ...

    def in_states(self, db: Session, states: Iterable[str]) -> Sequence[AnyDeficiency]: ...


class SqlDeficiencyRepository:
    def __init__(self, model: type[AnyDeficiency]) -> None:
        self.model = model

    def get(self, db: Session, deficiency_id: str) -> Optional[AnyDeficiency]:
        if not deficiency_id:
            return None
        return db.get(self.model, str(deficiency_id))

    def add(self, db: Session, row: AnyDeficiency) -> None:
        db.add(row)

    def delete(self, db: Session, row: AnyDeficiency) -> None:
        db.delete(row)

    def in_states(self, db: Session, states: Iterable[str]) -> Sequence[AnyDeficiency]:
        wanted = [str(s) for s in states]
        if not wanted:
            return []
        return db.scalars(select(self.model).where(self.model.state.in_(wanted)).order_by(self.model.id)).all()


@dataclass(frozen=True)
class LocatedDeficiency:
    row: AnyDeficiency
    archived: bool


class DeficiencyStore:
    def __init__(
        self,
        active: Optional[DeficiencyRepository] = None,
        archive: Optional[DeficiencyRepository] = None,
    ) -> None:
        self.active = active or SqlDeficiencyRepository(DeficientItem)
        self.archive = archive or SqlDeficiencyRepository(ArchivedDeficientItem)

    def find_active(self, db: Session, deficiency_id: str) -> Optional[DeficientItem]:
        return self.active.get(db, deficiency_id)

    def active_in_states(self, db: Session, states: Iterable[str]) -> Sequence[DeficientItem]:
        return self.active.in_states(db, states)

    def locate(self, db: Session, deficiency_id: str) -> Optional[LocatedDeficiency]:
        row = self.active.get(db, deficiency_id)
        if row is not None:
            return LocatedDeficiency(row=row, archived=False)
        row = self.archive.get(db, deficiency_id)
        if row is not None:
            return LocatedDeficiency(row=row, archived=True)
        return None

    def move_to_archive(self, db: Session, row: DeficientItem) -> ArchivedDeficientItem:
        """Does NOT commit; caller owns the transaction."""
        archived = ArchivedDeficientItem(**row.copy_columns(), archived_at=datetime.utcnow())
        self.active.delete(db, row)
        db.flush()
        self.archive.add(db, archived)
        db.flush()
        return archived

    def restore_from_archive(self, db: Session, row: ArchivedDeficientItem) -> DeficientItem:
        """Does NOT commit; caller owns the transaction."""
        active = DeficientItem(**row.copy_columns())
        self.archive.delete(db, row)
        db.flush()
        self.active.add(db, active)
        db.flush()
        return active
