from __future__ import annotations

from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from rollcall.models import Appel, AppelStatus, Presence, PresenceStatus


def find_expired_open_appels(db: Session, *, now: datetime, limit: int) -> list[tuple[int, datetime]]:
    return (
        db.query(Appel.id, Appel.expires_at)
        .filter(
            Appel.status == AppelStatus.OPEN.value,
            Appel.expires_at < now,
        )
        .order_by(Appel.expires_at.asc(), Appel.id.asc())
        .limit(max(1, int(limit)))
        .all()
    )


def close_appel_if_open(db: Session, appel_id: int, *, closed_at: datetime) -> bool:
    # Conditional on status so that overlapping runs close an appel at most once.
    updated = (
        db.query(Appel)
        .filter(Appel.id == int(appel_id), Appel.status == AppelStatus.OPEN.value)
        .update(
            {
                Appel.status: AppelStatus.CLOSED.value,
                Appel.closed_at: closed_at,
                Appel.updated_at: closed_at,
            },
            synchronize_session=False,
        )
    )
    return updated == 1


def mark_pending_presences_unsigned(db: Session, appel_id: int, *, at: datetime) -> int:
    return (
        db.query(Presence)
        .filter(
            Presence.appel_id == int(appel_id),
            Presence.status == PresenceStatus.PENDING.value,
        )
        .update(
            {
                Presence.status: PresenceStatus.UNSIGNED.value,
                Presence.updated_at: at,
            },
            synchronize_session=False,
        )
    )


def count_presences_by_status(db: Session, appel_id: int) -> dict[str, int]:
    rows = (
        db.query(Presence.status, func.count(Presence.id))
        .filter(Presence.appel_id == int(appel_id))
        .group_by(Presence.status)
        .all()
    )
    return {str(status): int(count) for status, count in rows}
