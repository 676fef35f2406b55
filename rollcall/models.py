from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rollcall.config import settings
from rollcall.core.time_provider import default_time_provider
from rollcall.db import Base


ALLOWED_EXPIRATION_MINUTES = (15, 20, 40)
DEFAULT_EXPIRATION_MINUTES = settings.appel_default_expiration_minutes


def _local_now() -> datetime:
    return default_time_provider.now().replace(tzinfo=None)


class AppelStatus(str, Enum):
    OPEN = 'open'
    CLOSED = 'closed'


class PresenceStatus(str, Enum):
    PENDING = 'pending'
    SIGNED = 'signed'
    LATE = 'late'
    ABSENT = 'absent'
    EXCUSED = 'excused'
    UNSIGNED = 'unsigned'

    @property
    def counts_as_present(self) -> bool:
        return self in (PresenceStatus.SIGNED, PresenceStatus.LATE)


def compute_expires_at(opened_at: datetime, minutes: int | None = None) -> datetime:
    """Signature deadline for an appel opened at ``opened_at``.

    Only the 15/20/40 minute windows are accepted, anything else falls back to
    the default window. The deadline is capped at the end of the same day.
    """
    window = int(minutes or DEFAULT_EXPIRATION_MINUTES)
    if window not in ALLOWED_EXPIRATION_MINUTES:
        window = DEFAULT_EXPIRATION_MINUTES
    expires_at = opened_at + timedelta(minutes=window)
    end_of_day = opened_at.replace(hour=23, minute=59, second=59, microsecond=0)
    return min(expires_at, end_of_day)


class Appel(Base):
    __tablename__ = 'appels'
    __table_args__ = (
        Index('ix_appels_status_expires_at', 'status', 'expires_at'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    label: Mapped[str] = mapped_column(String(180), default='')
    scheduled_start: Mapped[datetime] = mapped_column(DateTime, index=True)
    scheduled_end: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    status: Mapped[str] = mapped_column(String(20), default=AppelStatus.OPEN.value)  # open|closed
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, onupdate=_local_now)

    presences: Mapped[list['Presence']] = relationship(
        'Presence',
        back_populates='appel',
        cascade='all, delete-orphan',
        passive_deletes=True,
        order_by='Presence.id',
    )

    def is_signature_open(self, now: datetime) -> bool:
        if self.status != AppelStatus.OPEN.value:
            return False
        return now < self.expires_at


class Presence(Base):
    __tablename__ = 'presences'
    __table_args__ = (
        UniqueConstraint('appel_id', 'learner_id', name='uq_presences_appel_learner'),
        Index('ix_presences_appel_status', 'appel_id', 'status'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    appel_id: Mapped[int] = mapped_column(ForeignKey('appels.id', ondelete='CASCADE'), index=True)
    learner_id: Mapped[int] = mapped_column(Integer, index=True)
    status: Mapped[str] = mapped_column(String(20), default=PresenceStatus.PENDING.value)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, onupdate=_local_now)

    appel: Mapped['Appel'] = relationship('Appel', back_populates='presences')


class AutomationFailureLog(Base):
    __tablename__ = 'automation_failure_logs'
    __table_args__ = (
        Index('ix_automation_failure_logs_job_created', 'job_name', 'created_at'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    job_name: Mapped[str] = mapped_column(String(80), index=True)
    entity_type: Mapped[str] = mapped_column(String(50), default='', index=True)
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    error_message: Mapped[str] = mapped_column(Text, default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, index=True)
