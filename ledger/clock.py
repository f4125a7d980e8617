from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

from flask import current_app

DEFAULT_TIMEZONE = "Asia/Kolkata"


def today_in(tz_name: str) -> date:
    return datetime.now(ZoneInfo(tz_name)).date()


def ledger_today() -> date:
    """
    The ledger's "today" for HTTP and CLI callers.

    Only the outer layers call this; the engine always receives ``today`` as
    an argument.
    """
    return today_in(current_app.config.get("LEDGER_TIMEZONE") or DEFAULT_TIMEZONE)
