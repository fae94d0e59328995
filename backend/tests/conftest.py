import copy
import os
import sys
from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal

import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.app.stock_counts.models import StockBatch, StockCount, StockCountItem, StockLevel  # noqa: E402

COMPANY = "c0000000-0000-0000-0000-000000000001"
SITE = "s0000000-0000-0000-0000-000000000001"
OTHER_SITE = "s0000000-0000-0000-0000-000000000002"


class InMemoryStockCountStore:
    """Same surface as PgStockCountStore; `transaction()` restores a snapshot on error."""

    _STATE = (
        "sites",
        "counts",
        "count_extra",
        "items",
        "levels",
        "unit_costs",
        "batches",
        "batch_sites",
        "variances",
        "recalls",
        "movements",
        "batch_movements",
        "audits",
    )

    def __init__(self):
        self.sites = {SITE: {"is_archived": False}, OTHER_SITE: {"is_archived": False}}
        self.counts = {}
        self.count_extra = {}
        self.items = {}
        self.levels = {}
        self.unit_costs = {}
        self.batches = {}
        self.batch_sites = {}
        self.variances = {}
        self.recalls = {}
        self.movements = []
        self.batch_movements = []
        self.audits = []
        self.fail_batch_ids = set()
        self.before_status_write = None
        self.lock_requests = []
        self.lock_timeout = None
        self._seq = 0

    def _next_id(self, prefix):
        self._seq += 1
        return f"{prefix}-{self._seq}"

    @contextmanager
    def transaction(self):
        snapshot = {k: copy.deepcopy(getattr(self, k)) for k in self._STATE}
        try:
            yield
        except BaseException:
            for k, v in snapshot.items():
                setattr(self, k, v)
            raise

    def set_lock_timeout(self, ms):
        self.lock_timeout = ms

    # Seeding helpers

    def add_stock(self, stock_item_id, quantity, unit_cost=None, site_id=SITE):
        self.levels[(site_id, stock_item_id)] = Decimal(str(quantity))
        if unit_cost is not None:
            self.unit_costs[stock_item_id] = Decimal(str(unit_cost))

    def add_batch(self, batch_id, stock_item_id, quantity_on_hand, is_depleted=False, quantity_received=None, site_id=SITE):
        qty = Decimal(str(quantity_on_hand))
        self.batch_sites[batch_id] = site_id
        self.batches[batch_id] = StockBatch(
            id=batch_id,
            stock_item_id=stock_item_id,
            quantity_on_hand=qty,
            is_depleted=is_depleted,
            batch_code=batch_id.upper(),
            quantity_received=Decimal(str(quantity_received)) if quantity_received is not None else qty,
        )

    def seed_count(self, status, lines=(), count_id=None, site_id=SITE, **fields):
        """lines: (stock_item_id, expected, counted[, batch_id]) tuples; counted None means pending."""
        count_id = count_id or self._next_id("count")
        self.counts[count_id] = StockCount(
            id=count_id, company_id=COMPANY, site_id=site_id, status=status, name="Weekly count", **fields
        )
        self.count_extra[count_id] = {}
        items = []
        for n, ln in enumerate(lines, start=1):
            stock_item_id, expected, counted = ln[:3]
            items.append(
                StockCountItem(
                    id=f"{count_id}-item-{n}",
                    count_id=count_id,
                    stock_item_id=stock_item_id,
                    batch_id=ln[3] if len(ln) > 3 else None,
                    expected_quantity=Decimal(str(expected)),
                    status="counted" if counted is not None else "pending",
                    counted_quantity=Decimal(str(counted)) if counted is not None else None,
                )
            )
        self.items[count_id] = items
        self.counts[count_id].total_items = len(items)
        return count_id

    def stock_quantity(self, stock_item_id, site_id=SITE):
        return self.levels.get((site_id, stock_item_id))

    # Store surface

    def site_is_active(self, company_id, site_id):
        site = self.sites.get(site_id)
        if site is None:
            return None
        return not site["is_archived"]

    def get_count(self, company_id, count_id, for_update=False):
        c = self.counts.get(count_id)
        if not c or c.company_id != company_id:
            return None
        return replace(c)

    def update_count_status(self, company_id, count_id, expected_status, new_status, **fields):
        if self.before_status_write:
            self.before_status_write(count_id, expected_status, new_status)
        c = self.counts.get(count_id)
        if not c or c.company_id != company_id or c.status != expected_status:
            return False
        c.status = new_status
        for k, v in fields.items():
            if hasattr(c, k):
                setattr(c, k, v)
            else:
                self.count_extra[count_id][k] = v
        return True

    def create_count(self, company_id, site_id, name, count_date, frequency, actor_id, stock_item_ids=None):
        count_id = self._next_id("count")
        self.counts[count_id] = StockCount(
            id=count_id,
            company_id=company_id,
            site_id=site_id,
            status="draft",
            name=name,
            count_date=count_date,
            frequency=frequency,
            created_by=actor_id,
        )
        self.count_extra[count_id] = {}
        items = []
        for (sid_site, sid), qty in sorted(self.levels.items()):
            if sid_site != site_id or (stock_item_ids and sid not in stock_item_ids):
                continue
            live = [
                b
                for b in self.batches.values()
                if b.stock_item_id == sid and not b.is_depleted and self.batch_sites.get(b.id) in (site_id, None)
            ]
            lines = [(b.id, b.quantity_on_hand) for b in sorted(live, key=lambda b: b.batch_code)] or [(None, qty)]
            for batch_id, expected in lines:
                items.append(
                    StockCountItem(
                        id=self._next_id("item"),
                        count_id=count_id,
                        stock_item_id=sid,
                        batch_id=batch_id,
                        expected_quantity=expected,
                        unit_cost=self.unit_costs.get(sid),
                    )
                )
        self.items[count_id] = items
        self.counts[count_id].total_items = len(items)
        return count_id

    def list_items(self, company_id, count_id, status=None):
        rows = [replace(i) for i in self.items.get(count_id, []) if status is None or i.status == status]
        return sorted(rows, key=lambda i: (i.stock_item_id, i.batch_id or "", i.id))

    def record_item_counts(self, company_id, count_id, lines, actor_id, now):
        by_id = {i.id: i for i in self.items.get(count_id, [])}
        n = 0
        for ln in lines:
            item = by_id.get(ln["id"])
            if not item:
                continue
            if ln.get("counted_quantity") is not None:
                item.counted_quantity = Decimal(str(ln["counted_quantity"]))
                item.status = "counted"
            if ln.get("notes") is not None:
                item.notes = ln["notes"].strip() or None
            n += 1
        return n

    def set_approval_comments(self, company_id, count_id, comments):
        by_id = {i.id: i for i in self.items.get(count_id, [])}
        n = 0
        for item_id, text in comments.items():
            if item_id in by_id:
                by_id[item_id].approval_comments = (text or "").strip() or None
                n += 1
        return n

    def get_stock_items_for_update(self, company_id, site_id, stock_item_ids):
        self.lock_requests.append(("stock_levels", list(stock_item_ids)))
        return {
            sid: StockLevel(stock_item_id=sid, quantity=self.levels[(site_id, sid)], unit_cost=self.unit_costs.get(sid))
            for sid in stock_item_ids
            if (site_id, sid) in self.levels
        }

    def get_unit_costs(self, company_id, stock_item_ids):
        return {sid: self.unit_costs.get(sid) for sid in stock_item_ids}

    def set_stock_quantity(self, company_id, site_id, stock_item_id, qty):
        self.levels[(site_id, stock_item_id)] = qty

    def get_batches_for_update(self, company_id, batch_ids):
        self.lock_requests.append(("stock_batches", list(batch_ids)))
        return {bid: replace(self.batches[bid]) for bid in batch_ids if bid in self.batches}

    def set_batch_quantity(self, company_id, batch_id, qty, depleted):
        if batch_id in self.fail_batch_ids:
            raise RuntimeError("could not write batch row")
        b = self.batches.get(batch_id)
        if not b:
            raise LookupError(f"batch {batch_id} not found")
        b.quantity_on_hand = qty
        b.is_depleted = depleted

    def insert_variances(self, company_id, count_id, records):
        self.variances.setdefault(count_id, []).extend(records)

    def list_variances(self, company_id, count_id):
        return list(self.variances.get(count_id, []))

    def recall_affected_batches(self, company_id, recall_id):
        rows = self.recalls.get(recall_id)
        return list(rows) if rows is not None else None


class RecordingLedger:
    """Writes into the store's state so a rolled back transaction also drops ledger entries."""

    def __init__(self, store):
        self.store = store

    def record_movement(self, company_id, site_id, movement_type, stock_item_id, delta, reason, actor_id, reference_id=None):
        self.store.movements.append(
            {
                "site_id": site_id,
                "movement_type": movement_type,
                "stock_item_id": stock_item_id,
                "delta": delta,
                "reason": reason,
                "actor_id": actor_id,
                "reference_id": reference_id,
            }
        )

    def record_batch_movement(self, company_id, site_id, batch_id, quantity, actor_id, reference_id=None, notes=None):
        self.store.batch_movements.append(
            {"batch_id": batch_id, "quantity": quantity, "actor_id": actor_id, "reference_id": reference_id, "notes": notes}
        )

    def audit(self, company_id, actor_id, action, entity_id, details):
        self.store.audits.append({"action": action, "entity_id": entity_id, "actor_id": actor_id, "details": details})


class InMemoryPeopleDirectory:
    def __init__(self, people=None):
        self.people = list(people or [])
        self.error = None
        self.calls = []

    def add(self, person_id, name, role, site_id=None, company_id=COMPANY, email=None, is_active=True):
        self.people.append(
            {
                "id": person_id,
                "name": name,
                "role": role,
                "site_id": site_id,
                "company_id": company_id,
                "email": email,
                "is_active": is_active,
            }
        )

    def _visible(self, company_id):
        return [p for p in self.people if p["company_id"] == company_id and p.get("is_active", True)]

    def list_people(self, company_id, site_id=None, roles=None):
        self.calls.append({"site_id": site_id, "roles": roles})
        if self.error:
            raise self.error
        wanted = {r.strip().lower() for r in roles} if roles is not None else None
        out = []
        for p in self._visible(company_id):
            if site_id and p.get("site_id") != site_id:
                continue
            if wanted is not None and (p.get("role") or "").strip().lower() not in wanted:
                continue
            out.append({"id": p["id"], "name": p["name"], "role": p["role"], "email": p.get("email")})
        return sorted(out, key=lambda r: ((r["name"] or "").lower(), r["id"]))

    def distinct_roles(self, company_id):
        if self.error:
            raise self.error
        return sorted({p["role"] for p in self._visible(company_id) if p.get("role")})


@pytest.fixture
def store():
    return InMemoryStockCountStore()


@pytest.fixture
def ledger(store):
    return RecordingLedger(store)


@pytest.fixture
def directory():
    return InMemoryPeopleDirectory()
