from __future__ import annotations

from decimal import Decimal
from typing import Optional

from .errors import InvalidInput, NotFound
from .models import PCT_Q, MassBalance, q_qty


def _balance(produced: Decimal, recovered: Decimal, batches: int, source: str, source_id: str) -> MassBalance:
    produced = q_qty(produced)
    recovered = q_qty(recovered)
    unaccounted = q_qty(produced - recovered)
    pct = Decimal("0")
    if produced != 0:
        pct = (unaccounted / produced * 100).quantize(PCT_Q)
    return MassBalance(
        total_produced=produced,
        total_recovered=recovered,
        unaccounted=unaccounted,
        variance_percent=pct,
        batch_count=batches,
        source=source,
        source_id=str(source_id),
    )


def count_mass_balance(store, company_id: str, count_id: str) -> MassBalance:
    if not store.get_count(company_id, count_id):
        raise NotFound("stock count", count_id)
    rows = [v for v in store.list_variances(company_id, count_id) if v.batch_id]
    produced = sum((v.expected_quantity for v in rows), Decimal("0"))
    recovered = sum((v.counted_quantity for v in rows), Decimal("0"))
    return _balance(produced, recovered, len({v.batch_id for v in rows}), "count", count_id)


def recall_mass_balance(store, company_id: str, recall_id: str) -> MassBalance:
    rows = store.recall_affected_batches(company_id, recall_id)
    if rows is None:
        raise NotFound("recall", recall_id)
    produced = Decimal("0")
    recovered = Decimal("0")
    for r in rows:
        affected = r.get("quantity_affected")
        if affected is None:
            affected = r.get("quantity_received")
        produced += Decimal(str(affected or 0))
        recovered += Decimal(str(r.get("quantity_recovered") or 0))
    return _balance(produced, recovered, len(rows), "recall", recall_id)


def get_mass_balance(store, company_id: str, count_id: Optional[str] = None, recall_id: Optional[str] = None) -> MassBalance:
    if bool(count_id) == bool(recall_id):
        raise InvalidInput("exactly one of count_id or recall_id is required")
    if count_id:
        return count_mass_balance(store, company_id, count_id)
    return recall_mass_balance(store, company_id, recall_id)
