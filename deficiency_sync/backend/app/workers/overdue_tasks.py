# backend/app/workers/overdue_tasks.py
from __future__ import annotations

import logging

from ..config import settings
from ..db import SessionLocal
from ..domain.deficiencies.errors import PersistenceFailure
from ..services.overdue_sweep import sweep_overdue
from .celery_app import celery_app
from .trello_tasks import _backoff_seconds

log = logging.getLogger("deficiency_sync.tasks")


@celery_app.task(bind=True, max_retries=settings.sync_max_retries, name="app.workers.overdue_tasks.sync_overdue_task")
def sync_overdue_task(self) -> dict:
    """Beat entry point; transitions publish through the Celery publisher."""
    db = SessionLocal()
    try:
        result = sweep_overdue(db)
        log.info(
            f"{self.name}: scanned={result.scanned} overdue={len(result.overdue)} "
            f"requires_progress_update={len(result.requires_progress_update)} failed={len(result.failed)}",
            extra={"handler": self.name},
        )
        return {"ok": True, **result.as_dict()}
    except PersistenceFailure as e:
        retries = int(getattr(self.request, "retries", 0) or 0)
        raise self.retry(exc=e, countdown=_backoff_seconds(retries=retries))
    finally:
        db.close()
