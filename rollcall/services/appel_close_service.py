from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rollcall.core.errors import SessionCloseError
from rollcall.core.time_provider import TimeProvider, default_time_provider
from rollcall.models import PresenceStatus
from rollcall.services.appel_store import close_appel_if_open, count_presences_by_status, mark_pending_presences_unsigned
from rollcall.services.automation_failure_service import log_automation_failure
from rollcall.services.expiry_scanner import ExpiredAppel, scan_expired_appels


logger = logging.getLogger(__name__)

JOB_NAME = 'close_expired_appels'
MODE_LIVE = 'live'
MODE_DRY_RUN = 'dry_run'


@dataclass(frozen=True)
class AppelCloseStats:
    appel_id: int
    total: int
    present: int
    absent: int
    excused: int
    late: int
    pending: int
    unsigned: int
    newly_unsigned: int
    attendance_rate: float


@dataclass(frozen=True)
class CloseFailure:
    appel_id: int
    error: str


@dataclass
class CloseReport:
    mode: str
    now: datetime
    candidates: list[ExpiredAppel] = field(default_factory=list)
    closed: list[AppelCloseStats] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failures: list[CloseFailure] = field(default_factory=list)

    @property
    def dry_run(self) -> bool:
        return self.mode == MODE_DRY_RUN

    @property
    def candidate_count(self) -> int:
        return len(self.candidates)

    @property
    def closed_count(self) -> int:
        return len(self.closed)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def all_failed(self) -> bool:
        return bool(self.failures) and not self.closed

    def as_dict(self) -> dict:
        return {
            'mode': self.mode,
            'now': self.now.isoformat(),
            'candidates': [int(c.appel_id) for c in self.candidates],
            'closed': self.closed_count,
            'skipped': list(self.skipped),
            'failures': [{'appel_id': f.appel_id, 'error': f.error} for f in self.failures],
        }


def appel_statistics(db: Session, appel_id: int) -> dict:
    """Per-status head counts for one appel.

    ``present`` covers signed and late learners. ``absent``, ``excused``,
    ``late``, ``pending`` and ``unsigned`` are the raw counts of each status.
    Values outside ``PresenceStatus`` only show up in ``total`` and ``by_status``.
    """
    counts = count_presences_by_status(db, appel_id)
    total = sum(counts.values())
    present = sum(n for status, n in counts.items() if _counts_as_present(status))
    return {
        'total': total,
        'present': present,
        'absent': counts.get(PresenceStatus.ABSENT.value, 0),
        'excused': counts.get(PresenceStatus.EXCUSED.value, 0),
        'late': counts.get(PresenceStatus.LATE.value, 0),
        'pending': counts.get(PresenceStatus.PENDING.value, 0),
        'unsigned': counts.get(PresenceStatus.UNSIGNED.value, 0),
        'attendance_rate': round((present / total) * 100, 1) if total > 0 else 0.0,
        'by_status': counts,
    }


def _counts_as_present(value: str) -> bool:
    try:
        return PresenceStatus(value).counts_as_present
    except ValueError:
        return False


def close_appel(db: Session, appel_id: int, *, now: datetime) -> AppelCloseStats | None:
    """Close one appel and mark its pending presences unsigned, atomically.

    Returns ``None`` when the appel is no longer open (closed by a concurrent
    run). Any storage error rolls the whole appel back and is raised as
    ``SessionCloseError``.
    """
    try:
        if not close_appel_if_open(db, appel_id, closed_at=now):
            db.rollback()
            return None
        newly_unsigned = mark_pending_presences_unsigned(db, appel_id, at=now)
        stats = appel_statistics(db, appel_id)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise SessionCloseError(appel_id, str(exc)) from exc

    logger.info(
        'appel_closed',
        extra={
            'appel_id': int(appel_id),
            'present': stats['present'],
            'absent': stats['absent'],
            'newly_unsigned': int(newly_unsigned),
        },
    )
    return AppelCloseStats(
        appel_id=int(appel_id),
        total=stats['total'],
        present=stats['present'],
        absent=stats['absent'],
        excused=stats['excused'],
        late=stats['late'],
        pending=stats['pending'],
        unsigned=stats['unsigned'],
        newly_unsigned=int(newly_unsigned),
        attendance_rate=stats['attendance_rate'],
    )


def close_expired_appels(
    db: Session,
    *,
    dry_run: bool = False,
    batch_size: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> CloseReport:
    now = time_provider.now().replace(tzinfo=None)
    candidates = scan_expired_appels(db, now=now, batch_size=batch_size)

    if dry_run:
        db.rollback()
        logger.info('expired_appels_dry_run candidates=%s', len(candidates))
        return CloseReport(mode=MODE_DRY_RUN, now=now, candidates=candidates)

    report = CloseReport(mode=MODE_LIVE, now=now, candidates=candidates)
    for candidate in candidates:
        try:
            stats = close_appel(db, candidate.appel_id, now=now)
        except SessionCloseError as exc:
            logger.error(
                'automation_failure',
                extra={'job': JOB_NAME, 'entity_id': exc.appel_id, 'error': exc.message},
            )
            report.failures.append(CloseFailure(appel_id=exc.appel_id, error=exc.message))
            log_automation_failure(
                db,
                job_name=JOB_NAME,
                entity_type='appel',
                entity_id=exc.appel_id,
                error_message=exc.message,
                time_provider=time_provider,
            )
            continue
        if stats is None:
            logger.info('appel_close_skipped_already_closed appel_id=%s', candidate.appel_id)
            report.skipped.append(int(candidate.appel_id))
            continue
        report.closed.append(stats)

    if report.closed_count > 0:
        logger.info('expired_appels_closed count=%s', report.closed_count)
    if report.all_failed:
        logger.warning('expired_appels_all_failed failures=%s', report.failure_count)
    return report
