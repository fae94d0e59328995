from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import Dict, Optional, List
from decimal import Decimal
from datetime import date
from dataclasses import asdict

from ..config import settings
from ..db import get_conn, set_company_context
from ..deps import get_actor_id, get_company_id, require_permission
from ..validation import CountAction, CountFrequency
from ..stock_counts.approvers import resolution_to_dict, resolve_approvers
from ..stock_counts.directory import PgPeopleDirectory
from ..stock_counts.mass_balance import get_mass_balance
from ..stock_counts.reconciliation import reconcile
from ..stock_counts.scheduling import create_count
from ..stock_counts.state_machine import load_count, record_counts, transition
from ..stock_counts.store import PgMovementLedger, PgStockCountStore

router = APIRouter(tags=["stock-counts"])


class StockCountIn(BaseModel):
    site_id: str
    name: str
    count_date: Optional[date] = None
    frequency: CountFrequency = "adhoc"
    stock_item_ids: Optional[List[str]] = None


class CountLineIn(BaseModel):
    id: str
    counted_quantity: Optional[Decimal] = None
    notes: Optional[str] = None


class CountLinesIn(BaseModel):
    lines: List[CountLineIn]


class TransitionIn(BaseModel):
    approver_id: Optional[str] = None
    # stock count item id -> comment; only read by approve
    approval_comments: Optional[Dict[str, str]] = None


def _count_out(count, items=None) -> dict:
    out = {"count": asdict(count)}
    if items is not None:
        out["items"] = [asdict(i) for i in items]
    return out


@router.get("/stock-counts/approvers", dependencies=[Depends(require_permission("inventory:read"))])
def list_site_approvers(
    site_id: str = Query(..., description="Site the count belongs to"),
    company_id: str = Depends(get_company_id),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        resolution = resolve_approvers(PgPeopleDirectory(conn), company_id, site_id)
        return resolution_to_dict(resolution)


@router.post("/stock-counts", dependencies=[Depends(require_permission("inventory:write"))])
def create_stock_count(data: StockCountIn, company_id: str = Depends(get_company_id), actor_id: str = Depends(get_actor_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        store = PgStockCountStore(conn)
        count_id = create_count(
            store,
            PgMovementLedger(conn),
            company_id,
            data.site_id,
            data.name,
            actor_id,
            count_date=data.count_date,
            frequency=data.frequency,
            stock_item_ids=data.stock_item_ids,
        )
        return _count_out(load_count(store, company_id, count_id), store.list_items(company_id, count_id))


@router.get("/stock-counts/{count_id}", dependencies=[Depends(require_permission("inventory:read"))])
def get_stock_count(count_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        store = PgStockCountStore(conn)
        count = load_count(store, company_id, count_id)
        return _count_out(count, store.list_items(company_id, count_id))


@router.patch("/stock-counts/{count_id}/items", dependencies=[Depends(require_permission("inventory:write"))])
def record_stock_count_items(
    count_id: str,
    data: CountLinesIn,
    company_id: str = Depends(get_company_id),
    actor_id: str = Depends(get_actor_id),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        store = PgStockCountStore(conn)
        count = record_counts(store, company_id, count_id, [ln.model_dump() for ln in data.lines], actor_id)
        return _count_out(count)


@router.get("/stock-counts/{count_id}/approvers", dependencies=[Depends(require_permission("inventory:read"))])
def list_count_approvers(count_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        count = load_count(PgStockCountStore(conn), company_id, count_id)
        resolution = resolve_approvers(PgPeopleDirectory(conn), company_id, count.site_id)
        return resolution_to_dict(resolution)


@router.post("/stock-counts/{count_id}/reconcile", dependencies=[Depends(require_permission("inventory:write"))])
def reconcile_stock_count(count_id: str, company_id: str = Depends(get_company_id), actor_id: str = Depends(get_actor_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        result = reconcile(
            PgStockCountStore(conn),
            PgMovementLedger(conn),
            company_id,
            count_id,
            actor_id,
            lock_timeout_ms=settings.stock_count_lock_timeout_ms,
        )
        return {
            "count": asdict(result.count),
            "variances": [asdict(v) for v in result.variances],
            "total_variance_value": result.total_variance_value,
            "depleted_batch_ids": result.depleted_batch_ids,
        }


@router.post("/stock-counts/{count_id}/{action}", dependencies=[Depends(require_permission("inventory:write"))])
def transition_stock_count(
    count_id: str,
    action: CountAction,
    data: Optional[TransitionIn] = None,
    company_id: str = Depends(get_company_id),
    actor_id: str = Depends(get_actor_id),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        count = transition(
            PgStockCountStore(conn),
            PgPeopleDirectory(conn),
            PgMovementLedger(conn),
            company_id,
            count_id,
            action,
            actor_id,
            approver_id=data.approver_id if data else None,
            approval_comments=data.approval_comments if data else None,
            lock_timeout_ms=settings.stock_count_lock_timeout_ms,
        )
        return _count_out(count)


@router.get("/stock-counts/{count_id}/variances", dependencies=[Depends(require_permission("inventory:read"))])
def list_stock_count_variances(count_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        store = PgStockCountStore(conn)
        load_count(store, company_id, count_id)
        return {"variances": [asdict(v) for v in store.list_variances(company_id, count_id)]}


@router.get("/stock-counts/{count_id}/mass-balance", dependencies=[Depends(require_permission("inventory:read"))])
def stock_count_mass_balance(count_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        return get_mass_balance(PgStockCountStore(conn), company_id, count_id=count_id).to_dict()


@router.get("/recalls/{recall_id}/mass-balance", dependencies=[Depends(require_permission("inventory:read"))])
def recall_mass_balance(recall_id: str, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        return get_mass_balance(PgStockCountStore(conn), company_id, recall_id=recall_id).to_dict()
