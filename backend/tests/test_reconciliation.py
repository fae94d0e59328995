from datetime import datetime, timezone
from decimal import Decimal

import pytest

from backend.app.stock_counts.errors import (
    ConcurrentModification,
    NotFound,
    PreconditionFailed,
    ReconciliationFailed,
)
from backend.app.stock_counts.models import StockCountItem
from backend.app.stock_counts.reconciliation import MOVEMENT_TYPE, compute_variance, reconcile

COMPANY = "c0000000-0000-0000-0000-000000000001"
SITE = "s0000000-0000-0000-0000-000000000001"
NOW = datetime(2026, 3, 2, 17, 0, tzinfo=timezone.utc)


def _reconcile(store, ledger, count_id, actor="u-mgr", **kw):
    return reconcile(store, ledger, COMPANY, count_id, actor, now=NOW, **kw)


def test_variances_and_total_value(store, ledger):
    store.add_stock("si-1", 10, unit_cost="2.00")
    store.add_stock("si-2", 5, unit_cost="3.00")
    cid = store.seed_count("approved", [("si-1", 10, 7), ("si-2", 5, 5)])

    result = _reconcile(store, ledger, cid)

    by_item = {v.stock_item_id: v for v in result.variances}
    assert by_item["si-1"].variance_quantity == Decimal("-3")
    assert by_item["si-1"].variance_value == Decimal("-6.00")
    assert by_item["si-2"].variance_quantity == Decimal("0")
    assert by_item["si-2"].variance_value == Decimal("0.00")
    assert result.total_variance_value == Decimal("-6.00")

    count = store.counts[cid]
    assert count.status == "finalized"
    assert count.total_variance_value == Decimal("-6.00")
    assert count.finalized_by == "u-mgr"
    assert count.finalized_at == NOW
    assert count.variance_count == 1
    assert len(store.variances[cid]) == 2


def test_counted_quantity_is_authoritative(store, ledger):
    store.add_stock("si-1", 10, unit_cost="2.00")
    store.add_stock("si-2", 5, unit_cost="3.00")
    cid = store.seed_count("approved", [("si-1", 10, 7), ("si-2", 5, 5)])
    # A delivery landed after the snapshot; the count still wins.
    store.add_stock("si-1", 25, unit_cost="2.00")

    result = _reconcile(store, ledger, cid)

    assert store.stock_quantity("si-1") == Decimal("7")
    assert store.stock_quantity("si-2") == Decimal("5")
    adj = {a.stock_item_id: a for a in result.stock_adjustments}
    assert adj["si-1"].delta == Decimal("-18")
    # Only non-zero deltas reach the movement ledger.
    assert [(m["stock_item_id"], m["delta"], m["movement_type"]) for m in store.movements] == [
        ("si-1", Decimal("-18"), MOVEMENT_TYPE)
    ]
    assert store.movements[0]["reference_id"] == cid
    assert store.audits[-1]["action"] == "stock_count_finalized"
    assert store.audits[-1]["details"]["total_variance_value"] == "-6.00"


def test_batch_counted_as_zero_is_depleted(store, ledger):
    store.add_stock("si-1", 4, unit_cost="1.50")
    store.add_batch("b-1", "si-1", 4)
    cid = store.seed_count("approved", [("si-1", 4, 0, "b-1")])

    result = _reconcile(store, ledger, cid)

    batch = store.batches["b-1"]
    assert batch.quantity_on_hand == Decimal("0")
    assert batch.is_depleted is True
    assert result.depleted_batch_ids == ["b-1"]
    assert store.batch_movements[0]["quantity"] == Decimal("-4")
    assert store.batch_movements[0]["notes"] == "depleted by stock count"


def test_positive_recount_resurrects_depleted_batch(store, ledger):
    store.add_stock("si-1", 0, unit_cost="1.00")
    store.add_batch("b-1", "si-1", 0, is_depleted=True)
    cid = store.seed_count("approved", [("si-1", 0, 3, "b-1")])

    result = _reconcile(store, ledger, cid)

    batch = store.batches["b-1"]
    assert batch.quantity_on_hand == Decimal("3")
    assert batch.is_depleted is False
    assert result.depleted_batch_ids == []


def test_several_batches_of_one_item_sum_into_the_stock_level(store, ledger):
    store.add_stock("si-1", 12, unit_cost="1.00")
    store.add_batch("b-1", "si-1", 8)
    store.add_batch("b-2", "si-1", 4)
    cid = store.seed_count("approved", [("si-1", 8, 6, "b-1"), ("si-1", 4, 0, "b-2")])

    result = _reconcile(store, ledger, cid)

    assert store.stock_quantity("si-1") == Decimal("6")
    assert store.batches["b-1"].quantity_on_hand == Decimal("6")
    assert store.batches["b-2"].is_depleted is True
    assert result.total_variance_value == Decimal("-6.00")


def test_variance_percent():
    item = StockCountItem(id="i", count_id="c", stock_item_id="si", expected_quantity=Decimal("8"), status="counted", counted_quantity=Decimal("6"))
    assert compute_variance(item, Decimal("2")).variance_percent == Decimal("-25.00")

    fresh = StockCountItem(id="i", count_id="c", stock_item_id="si", expected_quantity=Decimal("0"), status="counted", counted_quantity=Decimal("2"))
    v = compute_variance(fresh, None)
    assert v.variance_percent is None
    assert v.variance_value == Decimal("0.00")


def test_unit_cost_falls_back_to_stock_item_when_level_has_none(store, ledger, monkeypatch):
    store.add_stock("si-1", 3)
    monkeypatch.setattr(store, "get_unit_costs", lambda company_id, ids: {"si-1": Decimal("4.00")})
    cid = store.seed_count("approved", [("si-1", 3, 1)])

    result = _reconcile(store, ledger, cid)

    assert result.total_variance_value == Decimal("-8.00")


def test_failing_batch_update_leaves_nothing_applied(store, ledger):
    store.add_stock("si-1", 10, unit_cost="2.00")
    store.add_stock("si-2", 6, unit_cost="1.00")
    store.add_batch("b-2", "si-2", 6)
    store.fail_batch_ids.add("b-2")
    cid = store.seed_count("approved", [("si-1", 10, 7), ("si-2", 6, 0, "b-2")])

    with pytest.raises(ReconciliationFailed) as exc_info:
        _reconcile(store, ledger, cid)

    err = exc_info.value
    assert err.batch_id == "b-2"
    assert err.item_id == f"{cid}-item-2"
    assert "No changes were made" in err.message
    assert isinstance(err.__cause__, RuntimeError)

    # Stock level for si-1 had been written before the batch failed; it is rolled back.
    assert store.stock_quantity("si-1") == Decimal("10")
    assert store.batches["b-2"].quantity_on_hand == Decimal("6")
    assert store.batches["b-2"].is_depleted is False
    assert store.counts[cid].status == "approved"
    assert store.counts[cid].finalized_at is None
    assert store.variances == {}
    assert store.movements == []
    assert store.audits == []


def test_missing_batch_is_named(store, ledger):
    store.add_stock("si-1", 1, unit_cost="1.00")
    cid = store.seed_count("approved", [("si-1", 1, 1, "b-gone")])

    with pytest.raises(ReconciliationFailed) as exc_info:
        _reconcile(store, ledger, cid)

    assert exc_info.value.batch_id == "b-gone"
    assert store.counts[cid].status == "approved"


def test_second_reconcile_is_rejected(store, ledger):
    store.add_stock("si-1", 10, unit_cost="2.00")
    cid = store.seed_count("approved", [("si-1", 10, 7)])

    _reconcile(store, ledger, cid)
    with pytest.raises(PreconditionFailed) as exc_info:
        _reconcile(store, ledger, cid)

    assert exc_info.value.actual == "finalized"
    assert store.stock_quantity("si-1") == Decimal("7")
    assert len(store.movements) == 1
    assert len(store.variances[cid]) == 1


def test_reconcile_losing_the_status_race_rolls_back(store, ledger):
    store.add_stock("si-1", 10, unit_cost="2.00")
    cid = store.seed_count("approved", [("si-1", 10, 7)])

    def other_reconcile_wins(count_id, expected, new):
        store.counts[count_id].status = "finalized"

    store.before_status_write = other_reconcile_wins

    with pytest.raises(ConcurrentModification):
        _reconcile(store, ledger, cid)

    assert store.stock_quantity("si-1") == Decimal("10")
    assert store.movements == []


def test_rows_are_locked_before_variances_are_computed(store, ledger):
    store.add_stock("si-2", 1, unit_cost="1.00")
    store.add_stock("si-1", 1, unit_cost="1.00")
    store.add_batch("b-9", "si-2", 1)
    store.add_batch("b-1", "si-1", 1)
    cid = store.seed_count("approved", [("si-2", 1, 1, "b-9"), ("si-1", 1, 1, "b-1")])

    _reconcile(store, ledger, cid, lock_timeout_ms=2500)

    assert store.lock_timeout == 2500
    assert store.lock_requests == [("stock_levels", ["si-1", "si-2"]), ("stock_batches", ["b-1", "b-9"])]


def test_finalized_invariants_hold(store, ledger):
    store.add_stock("si-1", 10, unit_cost="1.00")
    store.add_stock("si-2", 3, unit_cost="1.00")
    store.add_batch("b-2", "si-2", 3)
    cid = store.seed_count("approved", [("si-1", 10, 12), ("si-2", 3, 0, "b-2")])

    _reconcile(store, ledger, cid)

    for item in store.items[cid]:
        assert store.stock_quantity(item.stock_item_id) == item.counted_quantity
        if item.batch_id and item.counted_quantity <= 0:
            assert store.batches[item.batch_id].is_depleted is True
    assert store.counts[cid].finalized_at is not None


def test_unknown_count(store, ledger):
    with pytest.raises(NotFound):
        _reconcile(store, ledger, "sc-missing")
