"""
Variance and batch reconciliation for approved stock counts.

The whole adjustment runs in one transaction: stock levels and batches touched by
the count are row-locked first, then variances are computed, live quantities are
overwritten with the counted figures, variance records are persisted and the
count is finalized with a conditional status write. Any failure rolls everything
back and leaves the count approved.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from ..obs import json_log
from .errors import ConcurrentModification, NotFound, PreconditionFailed, ReconciliationFailed
from .models import (
    PCT_Q,
    BatchAdjustment,
    ReconciliationResult,
    StockAdjustment,
    VarianceRecord,
    q_money,
    q_qty,
)
from .state_machine import derived_counts, load_count, require_status, write_status

MOVEMENT_TYPE = "count_adjustment"


def compute_variance(item, unit_cost: Optional[Decimal]) -> VarianceRecord:
    expected = q_qty(item.expected_quantity)
    counted = q_qty(item.counted_quantity)
    var_qty = q_qty(counted - expected)
    cost = Decimal(str(unit_cost)) if unit_cost is not None else Decimal("0")
    pct = None
    if expected != 0:
        pct = (var_qty / expected * 100).quantize(PCT_Q)
    return VarianceRecord(
        item_id=item.id,
        stock_item_id=item.stock_item_id,
        batch_id=item.batch_id,
        expected_quantity=expected,
        counted_quantity=counted,
        variance_quantity=var_qty,
        unit_cost=cost,
        variance_value=q_money(var_qty * cost),
        variance_percent=pct,
    )


def compute_variances(items, unit_costs: dict) -> list:
    return [compute_variance(i, unit_costs.get(i.stock_item_id)) for i in items if i.status == "counted"]


def counted_totals(variances, key: str) -> dict:
    """Sum of counted quantities per stock item or per batch, in first-seen order."""
    out: dict = {}
    for v in variances:
        k = getattr(v, key)
        if k is None:
            continue
        out[k] = out.get(k, Decimal("0")) + v.counted_quantity
    return out


def reconcile(
    store,
    ledger,
    company_id: str,
    count_id: str,
    actor_id: str,
    now: Optional[datetime] = None,
    lock_timeout_ms: Optional[int] = None,
) -> ReconciliationResult:
    now = now or datetime.now(timezone.utc)
    at: dict = {"item_id": None, "batch_id": None}
    try:
        with store.transaction():
            if lock_timeout_ms:
                store.set_lock_timeout(lock_timeout_ms)
            count = load_count(store, company_id, count_id, for_update=True)
            require_status(count, "finalize")

            items = store.list_items(company_id, count_id, status="counted")
            stock_ids = sorted({i.stock_item_id for i in items})
            batch_ids = sorted({i.batch_id for i in items if i.batch_id})

            # Lock before reading anything a concurrent movement could change.
            levels = store.get_stock_items_for_update(company_id, count.site_id, stock_ids)
            batches = store.get_batches_for_update(company_id, batch_ids)
            for bid in batch_ids:
                if bid not in batches:
                    at["batch_id"] = bid
                    raise LookupError(f"batch {bid} not found")

            costs = {sid: lv.unit_cost for sid, lv in levels.items()}
            unpriced = [sid for sid in stock_ids if costs.get(sid) is None]
            if unpriced:
                costs.update({k: v for k, v in store.get_unit_costs(company_id, unpriced).items() if v is not None})
            variances = compute_variances(items, costs)

            stock_adjustments = []
            for sid, qty in counted_totals(variances, "stock_item_id").items():
                at["item_id"] = next(v.item_id for v in variances if v.stock_item_id == sid)
                at["batch_id"] = None
                prev = levels[sid].quantity if sid in levels else Decimal("0")
                qty = q_qty(qty)
                store.set_stock_quantity(company_id, count.site_id, sid, qty)
                stock_adjustments.append(StockAdjustment(stock_item_id=sid, previous_quantity=q_qty(prev), quantity=qty))

            batch_adjustments = []
            for bid, qty in counted_totals(variances, "batch_id").items():
                at["item_id"] = next(v.item_id for v in variances if v.batch_id == bid)
                at["batch_id"] = bid
                b = batches[bid]
                qty = q_qty(qty)
                depleted = qty <= 0
                # A positive recount resurrects a previously depleted batch.
                store.set_batch_quantity(company_id, bid, Decimal("0") if depleted else qty, depleted)
                batch_adjustments.append(
                    BatchAdjustment(
                        batch_id=bid,
                        stock_item_id=b.stock_item_id,
                        previous_quantity=q_qty(b.quantity_on_hand),
                        quantity_on_hand=Decimal("0") if depleted else qty,
                        is_depleted=depleted,
                        was_depleted=b.is_depleted,
                    )
                )
            at["item_id"] = at["batch_id"] = None

            store.insert_variances(company_id, count_id, variances)

            total = q_money(sum((v.variance_value for v in variances), Decimal("0")))
            items_counted, variance_count = derived_counts(items)
            count = write_status(
                store,
                count,
                "finalized",
                actor_id,
                "finalize",
                total_variance_value=total,
                items_counted=items_counted,
                variance_count=variance_count,
                finalized_by=actor_id,
                finalized_at=now,
            )

            reason = f"Stock count {count.name or count.id} adjustment"
            for adj in stock_adjustments:
                if adj.delta == 0:
                    continue
                ledger.record_movement(
                    company_id, count.site_id, MOVEMENT_TYPE, adj.stock_item_id, adj.delta, reason, actor_id, count.id
                )
            for adj in batch_adjustments:
                delta = q_qty(adj.quantity_on_hand - adj.previous_quantity)
                if delta == 0 and adj.is_depleted == adj.was_depleted:
                    continue
                ledger.record_batch_movement(
                    company_id,
                    count.site_id,
                    adj.batch_id,
                    delta,
                    actor_id,
                    count.id,
                    "depleted by stock count" if adj.is_depleted else None,
                )
            ledger.audit(
                company_id,
                actor_id,
                "stock_count_finalized",
                count.id,
                {
                    "items": len(variances),
                    "variance_count": variance_count,
                    "total_variance_value": str(total),
                    "stock_items_adjusted": sum(1 for a in stock_adjustments if a.delta != 0),
                    "batches_depleted": [a.batch_id for a in batch_adjustments if a.is_depleted],
                },
            )
    except (PreconditionFailed, ConcurrentModification, NotFound):
        raise
    except ReconciliationFailed as exc:
        json_log("error", "stock_count.reconcile_failed", company_id=company_id, **exc.payload)
        raise
    except Exception as exc:
        err = ReconciliationFailed(count_id, str(exc) or exc.__class__.__name__, item_id=at["item_id"], batch_id=at["batch_id"])
        json_log("error", "stock_count.reconcile_failed", company_id=company_id, **err.payload)
        raise err from exc

    json_log(
        "info",
        "stock_count.reconciled",
        company_id=company_id,
        count_id=count_id,
        actor_id=actor_id,
        items=len(variances),
        total_variance_value=str(total),
    )
    return ReconciliationResult(
        count=count,
        variances=variances,
        stock_adjustments=stock_adjustments,
        batch_adjustments=batch_adjustments,
        total_variance_value=total,
    )
