#!/usr/bin/env python3
"""
Stock count scheduler.

Creates draft `stock_counts` from active `stock_count_schedules` when `next_run_date` is due.
Expected quantities are snapshotted from live stock levels/batches at creation.
Weekly schedules advance 7 days, monthly ones to the same day next month (clamped);
adhoc schedules run once and are deactivated.
"""

import argparse
import os

import psycopg
from psycopg.rows import dict_row

from backend.app.obs import json_log
from backend.app.stock_counts.errors import StockCountError
from backend.app.stock_counts.scheduling import create_count, next_run_date
from backend.app.stock_counts.store import PgMovementLedger, PgStockCountStore

DB_URL_DEFAULT = os.getenv("DATABASE_URL", "postgresql://localhost/stockcounts")


def run_stock_count_scheduler(db_url: str, company_id: str, limit_schedules: int = 50) -> int:
    created = 0
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                # Company context for RLS.
                cur.execute("SELECT set_config('app.current_company_id', %s, true)", (company_id,))
                cur.execute(
                    """
                    SELECT id, site_id, name, frequency, next_run_date
                    FROM stock_count_schedules
                    WHERE company_id=%s AND is_active=true AND next_run_date <= CURRENT_DATE
                    ORDER BY next_run_date ASC, id ASC
                    LIMIT %s
                    FOR UPDATE
                    """,
                    (company_id, limit_schedules),
                )
                schedules = cur.fetchall() or []

            store = PgStockCountStore(conn)
            ledger = PgMovementLedger(conn)
            for s in schedules:
                run_date = s["next_run_date"]
                try:
                    count_id = create_count(
                        store,
                        ledger,
                        company_id,
                        str(s["site_id"]),
                        f"{s['name']} {run_date.isoformat()}",
                        None,
                        count_date=run_date,
                        frequency=s["frequency"],
                    )
                    created += 1
                    json_log("info", "stock_count.scheduled", company_id=company_id, schedule_id=str(s["id"]), count_id=count_id)
                except StockCountError as exc:
                    # e.g. archived site; the schedule still advances so it does not retry every pass.
                    json_log("warning", "stock_count.schedule_skipped", company_id=company_id, schedule_id=str(s["id"]), **exc.to_dict())

                nxt = next_run_date(run_date, s["frequency"])
                with conn.cursor() as cur:
                    if nxt is None:
                        cur.execute(
                            """
                            UPDATE stock_count_schedules
                            SET is_active=false, updated_at=now()
                            WHERE company_id=%s AND id=%s
                            """,
                            (company_id, s["id"]),
                        )
                    else:
                        cur.execute(
                            """
                            UPDATE stock_count_schedules
                            SET next_run_date=%s, updated_at=now()
                            WHERE company_id=%s AND id=%s
                            """,
                            (nxt, company_id, s["id"]),
                        )
    return created


def list_company_ids(db_url: str) -> list:
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT DISTINCT company_id FROM stock_count_schedules WHERE is_active=true ORDER BY company_id")
            return [str(r["company_id"]) for r in cur.fetchall() or []]


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--companies", nargs="*", help="Optional list of company UUIDs to process")
    args = parser.parse_args()

    for cid in args.companies or list_company_ids(args.db):
        created = run_stock_count_scheduler(args.db, cid, limit_schedules=args.limit)
        json_log("info", "stock_count.scheduler.pass", company_id=cid, created=created)


if __name__ == "__main__":
    main()
