from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rollcall.config import settings
from rollcall.core.errors import FatalScanError
from rollcall.metrics import timed_service
from rollcall.services.appel_store import find_expired_open_appels


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpiredAppel:
    appel_id: int
    expires_at: datetime


@timed_service('appel_expiry_scan')
def scan_expired_appels(db: Session, *, now: datetime, batch_size: int | None = None) -> list[ExpiredAppel]:
    """Open appels whose signature deadline is strictly before ``now``.

    Oldest deadlines come first so a bounded batch always drains the backlog
    from its stalest end. The query is read-only; a storage failure is raised
    as ``FatalScanError``.
    """
    limit = settings.appel_expiry_batch_size if batch_size is None else int(batch_size)
    if limit <= 0:
        raise ValueError('batch_size must be positive')
    try:
        rows = find_expired_open_appels(db, now=now, limit=limit)
    except SQLAlchemyError as exc:
        logger.error('appel_expiry_scan_failed', extra={'error': str(exc)})
        raise FatalScanError(f'expired appel scan failed: {exc}') from exc

    candidates = [ExpiredAppel(appel_id=int(appel_id), expires_at=expires_at) for appel_id, expires_at in rows]
    logger.info('appel_expiry_scan now=%s candidates=%s limit=%s', now.isoformat(), len(candidates), limit)
    return candidates
