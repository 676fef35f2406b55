from __future__ import annotations

from rollcall.core.time_provider import TimeProvider, default_time_provider
from rollcall.domain.jobs.runtime import run_job
from rollcall.services.appel_close_service import JOB_NAME, CloseReport, close_expired_appels


def execute(
    *,
    dry_run: bool = False,
    batch_size: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> CloseReport:
    return run_job(
        JOB_NAME,
        lambda db: close_expired_appels(db, dry_run=dry_run, batch_size=batch_size, time_provider=time_provider),
    )
