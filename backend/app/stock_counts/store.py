"""
Postgres persistence for stock counts, live stock levels and batches.

Every method runs on the caller's connection; grouping into one transaction is the
caller's job (`with store.transaction():`). Status writes are conditional on the
current status so concurrent transitions cannot both succeed.
"""
from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from .models import (
    StockBatch,
    StockCount,
    StockCountItem,
    StockLevel,
    VarianceRecord,
)

_COUNT_COLUMNS = """
  id, company_id, site_id, name, count_date, frequency, status,
  total_items, items_counted, variance_count, total_variance_value,
  approver_id, created_by, submitted_by, submitted_at,
  approved_by, approved_at, finalized_by, finalized_at, locked_by, locked_at
"""

# Header columns a status write may also touch.
_WRITABLE_COUNT_FIELDS = {
    "items_counted",
    "variance_count",
    "total_variance_value",
    "approver_id",
    "started_at",
    "completed_at",
    "submitted_by",
    "submitted_at",
    "approved_by",
    "approved_at",
    "finalized_by",
    "finalized_at",
    "locked_by",
    "locked_at",
}


def _s(v) -> Optional[str]:
    return str(v) if v is not None else None


def _count_from_row(r) -> StockCount:
    return StockCount(
        id=str(r["id"]),
        company_id=str(r["company_id"]),
        site_id=str(r["site_id"]),
        status=r["status"],
        name=r.get("name") or "",
        count_date=r.get("count_date"),
        frequency=r.get("frequency") or "adhoc",
        total_items=int(r.get("total_items") or 0),
        items_counted=int(r.get("items_counted") or 0),
        variance_count=int(r.get("variance_count") or 0),
        total_variance_value=Decimal(str(r.get("total_variance_value") or 0)),
        approver_id=_s(r.get("approver_id")),
        created_by=_s(r.get("created_by")),
        submitted_by=_s(r.get("submitted_by")),
        submitted_at=r.get("submitted_at"),
        approved_by=_s(r.get("approved_by")),
        approved_at=r.get("approved_at"),
        finalized_by=_s(r.get("finalized_by")),
        finalized_at=r.get("finalized_at"),
        locked_by=_s(r.get("locked_by")),
        locked_at=r.get("locked_at"),
    )


def _item_from_row(r) -> StockCountItem:
    cnt = r.get("counted_quantity")
    cost = r.get("unit_cost")
    return StockCountItem(
        id=str(r["id"]),
        count_id=str(r["count_id"]),
        stock_item_id=str(r["stock_item_id"]),
        batch_id=_s(r.get("batch_id")),
        status=r["status"],
        expected_quantity=Decimal(str(r.get("expected_quantity") or 0)),
        counted_quantity=Decimal(str(cnt)) if cnt is not None else None,
        unit_cost=Decimal(str(cost)) if cost is not None else None,
        notes=r.get("notes"),
        approval_comments=r.get("approval_comments"),
    )


class PgStockCountStore:
    def __init__(self, conn):
        self.conn = conn

    def transaction(self):
        return self.conn.transaction()

    def set_lock_timeout(self, ms: int):
        with self.conn.cursor() as cur:
            cur.execute("SELECT set_config('lock_timeout', %s, true)", (f"{int(ms)}ms",))

    # Sites

    def site_is_active(self, company_id: str, site_id: str) -> Optional[bool]:
        with self.conn.cursor() as cur:
            cur.execute(
                "SELECT is_archived FROM sites WHERE company_id=%s AND id=%s",
                (company_id, site_id),
            )
            r = cur.fetchone()
            if not r:
                return None
            return not r["is_archived"]

    # Counts

    def get_count(self, company_id: str, count_id: str, for_update: bool = False) -> Optional[StockCount]:
        sql = f"SELECT {_COUNT_COLUMNS} FROM stock_counts WHERE company_id=%s AND id=%s"
        if for_update:
            sql += " FOR UPDATE"
        with self.conn.cursor() as cur:
            cur.execute(sql, (company_id, count_id))
            r = cur.fetchone()
            return _count_from_row(r) if r else None

    def update_count_status(self, company_id: str, count_id: str, expected_status: str, new_status: str, **fields) -> bool:
        """
        Compare-and-swap on status. Returns False when no row matched, which means
        another transition moved the count first.
        """
        unknown = set(fields) - _WRITABLE_COUNT_FIELDS
        if unknown:
            raise ValueError(f"unknown stock count fields: {sorted(unknown)}")
        sets = ["status=%s", "updated_at=now()"]
        params: list = [new_status]
        for k in sorted(fields):
            sets.append(f"{k}=%s")
            params.append(fields[k])
        params.extend([company_id, count_id, expected_status])
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE stock_counts
                SET {', '.join(sets)}
                WHERE company_id=%s AND id=%s AND status=%s
                """,
                params,
            )
            return cur.rowcount == 1

    def create_count(
        self,
        company_id: str,
        site_id: str,
        name: str,
        count_date: date,
        frequency: str,
        actor_id: Optional[str],
        stock_item_ids: Optional[list] = None,
    ) -> str:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO stock_counts
                  (id, company_id, site_id, name, count_date, frequency, status, created_by)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, 'draft', %s)
                RETURNING id
                """,
                (company_id, site_id, name, count_date, frequency, actor_id),
            )
            count_id = cur.fetchone()["id"]

            # Snapshot expected quantities: one line per live batch, otherwise one aggregate line.
            sql = """
              SELECT sl.stock_item_id, sl.quantity, si.unit_cost
              FROM stock_levels sl
              JOIN stock_items si ON si.id = sl.stock_item_id
              WHERE sl.company_id=%s AND sl.site_id=%s AND si.is_active=true
            """
            params: list = [company_id, site_id]
            if stock_item_ids:
                sql += " AND sl.stock_item_id = ANY(%s::uuid[])"
                params.append(list(stock_item_ids))
            cur.execute(sql, params)
            levels = cur.fetchall() or []
            item_ids = [r["stock_item_id"] for r in levels]
            batches_by_item: dict = {}
            if item_ids:
                cur.execute(
                    """
                    SELECT id, stock_item_id, quantity_on_hand
                    FROM stock_batches
                    WHERE company_id=%s AND (site_id=%s OR site_id IS NULL)
                      AND stock_item_id = ANY(%s::uuid[])
                      AND is_depleted=false
                    ORDER BY batch_code ASC
                    """,
                    (company_id, site_id, item_ids),
                )
                for b in cur.fetchall() or []:
                    batches_by_item.setdefault(str(b["stock_item_id"]), []).append(b)

            total = 0
            for lv in levels:
                sid = str(lv["stock_item_id"])
                batches = batches_by_item.get(sid) or []
                lines = [(b["id"], b["quantity_on_hand"]) for b in batches] or [(None, lv["quantity"])]
                for batch_id, expected in lines:
                    cur.execute(
                        """
                        INSERT INTO stock_count_items
                          (id, company_id, count_id, stock_item_id, batch_id, status, expected_quantity, unit_cost)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, 'pending', %s, %s)
                        """,
                        (company_id, count_id, sid, batch_id, expected or 0, lv.get("unit_cost")),
                    )
                    total += 1
            cur.execute(
                "UPDATE stock_counts SET total_items=%s WHERE company_id=%s AND id=%s",
                (total, company_id, count_id),
            )
            return str(count_id)

    # Items

    def list_items(self, company_id: str, count_id: str, status: Optional[str] = None) -> list:
        sql = """
          SELECT id, count_id, stock_item_id, batch_id, status,
                 expected_quantity, counted_quantity, unit_cost, notes, approval_comments
          FROM stock_count_items
          WHERE company_id=%s AND count_id=%s
        """
        params: list = [company_id, count_id]
        if status:
            sql += " AND status=%s"
            params.append(status)
        sql += " ORDER BY stock_item_id ASC, batch_id ASC NULLS FIRST, id ASC"
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return [_item_from_row(r) for r in (cur.fetchall() or [])]

    def record_item_counts(self, company_id: str, count_id: str, lines: Iterable[dict], actor_id: str, now: datetime) -> int:
        n = 0
        with self.conn.cursor() as cur:
            for ln in lines:
                sets = []
                params: list = []
                if ln.get("counted_quantity") is not None:
                    sets.extend(["counted_quantity=%s", "status='counted'", "counted_at=%s", "counted_by=%s"])
                    params.extend([ln["counted_quantity"], now, actor_id])
                if "notes" in ln and ln["notes"] is not None:
                    sets.append("notes=%s")
                    params.append((ln["notes"] or "").strip() or None)
                if not sets:
                    continue
                params.extend([company_id, count_id, ln["id"]])
                cur.execute(
                    f"""
                    UPDATE stock_count_items
                    SET {', '.join(sets)}
                    WHERE company_id=%s AND count_id=%s AND id=%s
                    """,
                    params,
                )
                n += cur.rowcount
        return n

    def set_approval_comments(self, company_id: str, count_id: str, comments: dict) -> int:
        """comments: item id -> text; an empty string clears the comment."""
        n = 0
        with self.conn.cursor() as cur:
            for item_id, text in comments.items():
                cur.execute(
                    """
                    UPDATE stock_count_items
                    SET approval_comments=%s
                    WHERE company_id=%s AND count_id=%s AND id=%s
                    """,
                    ((text or "").strip() or None, company_id, count_id, item_id),
                )
                n += cur.rowcount
        return n

    # Live stock

    def get_stock_items_for_update(self, company_id: str, site_id: str, stock_item_ids: list) -> dict:
        """Row-locks the site's stock levels (ordered by id so lockers queue the same way)."""
        if not stock_item_ids:
            return {}
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT sl.stock_item_id, sl.quantity, si.unit_cost
                FROM stock_levels sl
                JOIN stock_items si ON si.id = sl.stock_item_id
                WHERE sl.company_id=%s AND sl.site_id=%s AND sl.stock_item_id = ANY(%s::uuid[])
                ORDER BY sl.stock_item_id
                FOR UPDATE OF sl
                """,
                (company_id, site_id, list(stock_item_ids)),
            )
            out = {}
            for r in cur.fetchall() or []:
                cost = r.get("unit_cost")
                out[str(r["stock_item_id"])] = StockLevel(
                    stock_item_id=str(r["stock_item_id"]),
                    quantity=Decimal(str(r["quantity"] or 0)),
                    unit_cost=Decimal(str(cost)) if cost is not None else None,
                )
            return out

    def get_unit_costs(self, company_id: str, stock_item_ids: list) -> dict:
        if not stock_item_ids:
            return {}
        with self.conn.cursor() as cur:
            cur.execute(
                "SELECT id, unit_cost FROM stock_items WHERE company_id=%s AND id = ANY(%s::uuid[])",
                (company_id, list(stock_item_ids)),
            )
            return {
                str(r["id"]): Decimal(str(r["unit_cost"])) if r.get("unit_cost") is not None else None
                for r in (cur.fetchall() or [])
            }

    def set_stock_quantity(self, company_id: str, site_id: str, stock_item_id: str, qty: Decimal):
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO stock_levels (id, company_id, site_id, stock_item_id, quantity)
                VALUES (gen_random_uuid(), %s, %s, %s, %s)
                ON CONFLICT (site_id, stock_item_id) DO UPDATE
                  SET quantity = EXCLUDED.quantity,
                      updated_at = now()
                """,
                (company_id, site_id, stock_item_id, qty),
            )

    def get_batches_for_update(self, company_id: str, batch_ids: list) -> dict:
        if not batch_ids:
            return {}
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, stock_item_id, batch_code, quantity_received, quantity_on_hand, is_depleted
                FROM stock_batches
                WHERE company_id=%s AND id = ANY(%s::uuid[])
                ORDER BY id
                FOR UPDATE
                """,
                (company_id, list(batch_ids)),
            )
            return {
                str(r["id"]): StockBatch(
                    id=str(r["id"]),
                    stock_item_id=str(r["stock_item_id"]),
                    batch_code=r.get("batch_code") or "",
                    quantity_received=Decimal(str(r.get("quantity_received") or 0)),
                    quantity_on_hand=Decimal(str(r["quantity_on_hand"] or 0)),
                    is_depleted=bool(r["is_depleted"]),
                )
                for r in (cur.fetchall() or [])
            }

    def set_batch_quantity(self, company_id: str, batch_id: str, qty: Decimal, depleted: bool):
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE stock_batches
                SET quantity_on_hand=%s, is_depleted=%s, updated_at=now()
                WHERE company_id=%s AND id=%s
                """,
                (qty, depleted, company_id, batch_id),
            )
            if cur.rowcount != 1:
                raise LookupError(f"batch {batch_id} not found")

    # Variances / traceability

    def insert_variances(self, company_id: str, count_id: str, records: Iterable[VarianceRecord]):
        with self.conn.cursor() as cur:
            for v in records:
                cur.execute(
                    """
                    INSERT INTO stock_count_variances
                      (id, company_id, count_id, item_id, stock_item_id, batch_id,
                       expected_quantity, counted_quantity, variance_quantity,
                       unit_cost, variance_value, variance_percent)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        company_id,
                        count_id,
                        v.item_id,
                        v.stock_item_id,
                        v.batch_id,
                        v.expected_quantity,
                        v.counted_quantity,
                        v.variance_quantity,
                        v.unit_cost,
                        v.variance_value,
                        v.variance_percent,
                    ),
                )

    def list_variances(self, company_id: str, count_id: str) -> list:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT item_id, stock_item_id, batch_id, expected_quantity, counted_quantity,
                       variance_quantity, unit_cost, variance_value, variance_percent
                FROM stock_count_variances
                WHERE company_id=%s AND count_id=%s
                ORDER BY stock_item_id ASC, batch_id ASC NULLS FIRST
                """,
                (company_id, count_id),
            )
            out = []
            for r in cur.fetchall() or []:
                pct = r.get("variance_percent")
                out.append(
                    VarianceRecord(
                        item_id=str(r["item_id"]),
                        stock_item_id=str(r["stock_item_id"]),
                        batch_id=_s(r.get("batch_id")),
                        expected_quantity=Decimal(str(r["expected_quantity"])),
                        counted_quantity=Decimal(str(r["counted_quantity"])),
                        variance_quantity=Decimal(str(r["variance_quantity"])),
                        unit_cost=Decimal(str(r.get("unit_cost") or 0)),
                        variance_value=Decimal(str(r["variance_value"])),
                        variance_percent=Decimal(str(pct)) if pct is not None else None,
                    )
                )
            return out

    def recall_affected_batches(self, company_id: str, recall_id: str) -> Optional[list]:
        """Rows of {batch_id, quantity_affected, quantity_recovered, quantity_received}; None if no such recall."""
        with self.conn.cursor() as cur:
            cur.execute("SELECT 1 FROM recalls WHERE company_id=%s AND id=%s", (company_id, recall_id))
            if not cur.fetchone():
                return None
            cur.execute(
                """
                SELECT rab.stock_batch_id AS batch_id, rab.quantity_affected, rab.quantity_recovered,
                       b.quantity_received
                FROM recall_affected_batches rab
                JOIN stock_batches b ON b.id = rab.stock_batch_id
                WHERE rab.company_id=%s AND rab.recall_id=%s
                ORDER BY rab.added_at ASC
                """,
                (company_id, recall_id),
            )
            return list(cur.fetchall() or [])


class PgMovementLedger:
    """Write-only movement/audit ledger. Shares the caller's transaction."""

    def __init__(self, conn):
        self.conn = conn

    def record_movement(
        self,
        company_id: str,
        site_id: Optional[str],
        movement_type: str,
        stock_item_id: str,
        delta: Decimal,
        reason: str,
        actor_id: Optional[str],
        reference_id: Optional[str] = None,
    ):
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO stock_movements
                  (id, company_id, site_id, stock_item_id, movement_type, quantity_delta,
                   reason, reference_type, reference_id, created_by)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, 'stock_count', %s, %s)
                """,
                (company_id, site_id, stock_item_id, movement_type, delta, reason, reference_id, actor_id),
            )

    def record_batch_movement(
        self,
        company_id: str,
        site_id: Optional[str],
        batch_id: str,
        quantity: Decimal,
        actor_id: Optional[str],
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
    ):
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO batch_movements
                  (id, company_id, site_id, batch_id, movement_type, quantity,
                   reference_type, reference_id, notes, created_by)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, 'adjustment', %s, 'stock_count', %s, %s, %s)
                """,
                (company_id, site_id, batch_id, quantity, reference_id, notes, actor_id),
            )

    def audit(self, company_id: str, actor_id: Optional[str], action: str, entity_id: str, details: dict):
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                VALUES (gen_random_uuid(), %s, %s, %s, 'stock_count', %s, %s::jsonb)
                """,
                (company_id, actor_id, action, entity_id, json.dumps(details, default=str)),
            )
