from __future__ import annotations

from typing import Callable, TypeVar

from sqlalchemy.orm import Session

from rollcall.db import SessionLocal
from rollcall.metrics import run_timed_job
from rollcall.run_context import current_job


T = TypeVar('T')


def with_db(task: Callable[[Session], T], *, job_label: str) -> T:
    db: Session = SessionLocal()
    token = current_job.set(job_label)
    try:
        return task(db)
    except Exception:
        db.rollback()
        raise
    finally:
        current_job.reset(token)
        db.close()


def run_job(label: str, task: Callable[[Session], T]) -> T:
    return run_timed_job(label, lambda: with_db(task, job_label=label))  # type: ignore[return-value]
