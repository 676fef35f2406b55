from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from rollcall.core.time_provider import TimeProvider, default_time_provider
from rollcall.models import AutomationFailureLog


logger = logging.getLogger(__name__)


def log_automation_failure(
    db: Session,
    *,
    job_name: str,
    entity_type: str,
    entity_id: int | None,
    error_message: str,
    time_provider: TimeProvider = default_time_provider,
) -> None:
    row = AutomationFailureLog(
        job_name=str(job_name or 'unknown'),
        entity_type=str(entity_type or ''),
        entity_id=int(entity_id) if entity_id is not None else None,
        error_message=str(error_message or ''),
        created_at=time_provider.now().replace(tzinfo=None),
    )
    # The failed appel was rolled back, so the row is committed on its own.
    try:
        db.add(row)
        db.commit()
    except Exception:
        db.rollback()
        logger.error(
            'automation_failure_log_write_failed',
            extra={
                'job': job_name,
                'entity_type': entity_type,
                'entity_id': entity_id,
            },
        )
