from datetime import timedelta
from pathlib import Path
import sys


# Ensure imports work when running this file directly: `python scripts/init_db.py`.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from rollcall.core.time_provider import default_time_provider
from rollcall.db import Base, SessionLocal, engine
from rollcall.models import Appel, Presence, PresenceStatus, compute_expires_at


Base.metadata.create_all(bind=engine)

db = SessionLocal()
try:
    if not db.query(Appel).first():
        now = default_time_provider.now().replace(tzinfo=None)
        blueprints = [
            ('BTS MCO - Management', now - timedelta(hours=3), 20),
            ('CAP Cuisine - Hygiene', now - timedelta(hours=1), 40),
            ('BP Coiffure - Coupe', now - timedelta(minutes=5), 15),
        ]
        for label, opened_at, window in blueprints:
            appel = Appel(
                label=label,
                scheduled_start=opened_at,
                scheduled_end=opened_at + timedelta(hours=2),
                expires_at=compute_expires_at(opened_at, window),
            )
            db.add(appel)
            db.flush()
            statuses = [PresenceStatus.PENDING, PresenceStatus.PENDING, PresenceStatus.SIGNED, PresenceStatus.ABSENT]
            for learner_id, status in enumerate(statuses, start=1):
                db.add(
                    Presence(
                        appel_id=appel.id,
                        learner_id=learner_id,
                        status=status.value,
                        signed_at=opened_at + timedelta(minutes=3) if status == PresenceStatus.SIGNED else None,
                    )
                )
        db.commit()
finally:
    db.close()

print('DB initialized with sample appels.')
