from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from rollcall.config import settings


APP_TIMEZONE = settings.app_timezone or "Europe/Paris"
APP_ZONEINFO = ZoneInfo(APP_TIMEZONE)


class TimeProvider:
    def now(self) -> datetime:
        return datetime.now(APP_ZONEINFO)


default_time_provider = TimeProvider()
