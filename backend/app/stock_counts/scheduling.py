from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import Optional

from .errors import InvalidInput, NotFound, PreconditionFailed
from .models import COUNT_FREQUENCIES


def next_run_date(current: date, frequency: str) -> Optional[date]:
    """Next due date for a schedule; adhoc schedules never recur."""
    if frequency == "weekly":
        return current + timedelta(days=7)
    if frequency == "monthly":
        year = current.year + (1 if current.month == 12 else 0)
        month = 1 if current.month == 12 else current.month + 1
        day = min(current.day, calendar.monthrange(year, month)[1])
        return date(year, month, day)
    return None


def create_count(
    store,
    ledger,
    company_id: str,
    site_id: str,
    name: str,
    actor_id: Optional[str],
    count_date: Optional[date] = None,
    frequency: str = "adhoc",
    stock_item_ids: Optional[list] = None,
) -> str:
    """Creates a draft count with its items snapshotting the site's current quantities."""
    name = (name or "").strip()
    if not name:
        raise InvalidInput("name is required", field="name")
    frequency = (frequency or "adhoc").strip().lower()
    if frequency not in COUNT_FREQUENCIES:
        raise InvalidInput("frequency must be weekly, monthly or adhoc", field="frequency")
    count_date = count_date or date.today()
    with store.transaction():
        active = store.site_is_active(company_id, site_id)
        if active is None:
            raise NotFound("site", site_id)
        if not active:
            raise PreconditionFailed("create count", "active site", "archived site", "the site has been archived")
        count_id = store.create_count(company_id, site_id, name, count_date, frequency, actor_id, stock_item_ids)
        ledger.audit(
            company_id,
            actor_id,
            "stock_count_created",
            count_id,
            {"site_id": site_id, "name": name, "count_date": str(count_date), "frequency": frequency},
        )
        return count_id
