"""
Stock count lifecycle.

    draft -> in_progress -> completed -> ready_for_approval -> approved -> finalized -> locked

Every transition is a conditional write on the current status. A write that matches
no row means another request moved the count first; the caller gets
ConcurrentModification and decides whether to reload and retry.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from ..obs import json_log
from .approvers import resolve_approvers
from .errors import (
    ApproverNotEligible,
    ConcurrentModification,
    InvalidInput,
    NotFound,
    PreconditionFailed,
)
from .models import EDITABLE_STATUSES, Found, StockCount, status_rank

# action -> (required status, resulting status)
TRANSITIONS = {
    "start": ("draft", "in_progress"),
    "complete": ("in_progress", "completed"),
    "submit": ("completed", "ready_for_approval"),
    "approve": ("ready_for_approval", "approved"),
    "finalize": ("approved", "finalized"),
    "lock": ("finalized", "locked"),
}


def _hint(action: str, actual: str) -> Optional[str]:
    required = TRANSITIONS[action][0]
    if status_rank(actual) > status_rank(required):
        return f"count is already {actual}"
    if action == "approve":
        return "mark ready for approval first" if actual == "completed" else "finish counting and mark ready for approval first"
    if action == "submit":
        return "count every item first"
    if action == "lock":
        return "finalize the count first"
    return None


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def load_count(store, company_id: str, count_id: str, for_update: bool = False) -> StockCount:
    count = store.get_count(company_id, count_id, for_update=for_update)
    if not count:
        raise NotFound("stock count", count_id)
    return count


def require_status(count: StockCount, action: str):
    required = TRANSITIONS[action][0]
    if count.status != required:
        raise PreconditionFailed(action, required, count.status, _hint(action, count.status))


def write_status(store, count: StockCount, new_status: str, actor_id: Optional[str], action: str, **fields) -> StockCount:
    if status_rank(new_status) < status_rank(count.status):
        raise PreconditionFailed(action, count.status, new_status, "status cannot move backwards")
    if not store.update_count_status(count.company_id, count.id, count.status, new_status, **fields):
        raise ConcurrentModification(count.id, count.status)
    if new_status != count.status:
        json_log(
            "info",
            "stock_count.transition",
            company_id=count.company_id,
            count_id=count.id,
            action=action,
            from_status=count.status,
            to_status=new_status,
            actor_id=actor_id,
        )
    return load_count(store, count.company_id, count.id)


def derived_counts(items) -> tuple:
    counted = [i for i in items if i.status == "counted"]
    return len(counted), sum(1 for i in counted if i.has_variance)


def _assert_site_active(store, count: StockCount, action: str):
    active = store.site_is_active(count.company_id, count.site_id)
    if active is None:
        raise NotFound("site", count.site_id)
    if not active:
        raise PreconditionFailed(action, "active site", "archived site", "the count's site has been archived")


def _start(store, count, actor_id, now, **_kw):
    _assert_site_active(store, count, "start")
    return write_status(store, count, "in_progress", actor_id, "start", started_at=now)


def _complete(store, count, actor_id, now, **_kw):
    items = store.list_items(count.company_id, count.id)
    if not items:
        raise InvalidInput("stock count has no items")
    pending = [i for i in items if i.status != "counted"]
    if pending:
        raise PreconditionFailed(
            "complete",
            "all items counted",
            f"{len(pending)} item(s) pending",
            "count every item first",
        )
    items_counted, variance_count = derived_counts(items)
    return write_status(
        store,
        count,
        "completed",
        actor_id,
        "complete",
        completed_at=now,
        items_counted=items_counted,
        variance_count=variance_count,
    )


def _submit(store, count, actor_id, now, directory=None, approver_id=None, **_kw):
    fields = {"submitted_by": actor_id, "submitted_at": now}
    resolution = resolve_approvers(directory, count.company_id, count.site_id)
    if approver_id:
        if str(approver_id) not in resolution.ids:
            raise ApproverNotEligible(approver_id, count.site_id, resolution.ids)
        fields["approver_id"] = str(approver_id)
    elif isinstance(resolution, Found) and resolution.recommended:
        fields["approver_id"] = resolution.recommended.id
    # Derived figures are written in the same statement as the status.
    items = store.list_items(count.company_id, count.id)
    fields["items_counted"], fields["variance_count"] = derived_counts(items)
    return write_status(store, count, "ready_for_approval", actor_id, "submit", **fields)


def _approve(store, count, actor_id, now, directory=None, approval_comments=None, **_kw):
    # Always re-resolved: an approver set captured at submission may be stale.
    resolution = resolve_approvers(directory, count.company_id, count.site_id)
    if str(actor_id) not in resolution.ids:
        raise ApproverNotEligible(actor_id, count.site_id, resolution.ids, count.approver_id)
    # A nominee who is still eligible is the only one who may approve.
    nominee = str(count.approver_id) if count.approver_id else None
    if nominee and nominee in resolution.ids and str(actor_id) != nominee:
        raise ApproverNotEligible(actor_id, count.site_id, resolution.ids, nominee)

    comments = {str(k): v for k, v in (approval_comments or {}).items() if v is not None}
    if comments:
        known = {i.id for i in store.list_items(count.company_id, count.id)}
        missing = sorted(k for k in comments if k not in known)
        if missing:
            raise NotFound("stock count item", missing[0])
        store.set_approval_comments(count.company_id, count.id, comments)
    return write_status(store, count, "approved", actor_id, "approve", approved_by=actor_id, approved_at=now)


def _lock(store, count, actor_id, now, **_kw):
    return write_status(store, count, "locked", actor_id, "lock", locked_by=actor_id, locked_at=now)


_HANDLERS = {
    "start": _start,
    "complete": _complete,
    "submit": _submit,
    "approve": _approve,
    "lock": _lock,
}


def transition(
    store,
    directory,
    ledger,
    company_id: str,
    count_id: str,
    action: str,
    actor_id: str,
    *,
    approver_id: Optional[str] = None,
    approval_comments: Optional[dict] = None,
    now: Optional[datetime] = None,
    lock_timeout_ms: Optional[int] = None,
) -> StockCount:
    action = (action or "").strip().lower()
    if action not in TRANSITIONS:
        raise InvalidInput(f"unknown action {action!r}", field="action")
    if not actor_id:
        raise InvalidInput("actor_id is required", field="actor_id")
    now = _now(now)

    if action == "finalize":
        from .reconciliation import reconcile

        return reconcile(
            store, ledger, company_id, count_id, actor_id, now=now, lock_timeout_ms=lock_timeout_ms
        ).count

    with store.transaction():
        count = load_count(store, company_id, count_id, for_update=(action == "submit"))
        if action == "lock" and count.status == "locked":
            return count
        require_status(count, action)
        return _HANDLERS[action](
            store,
            count,
            actor_id,
            now,
            directory=directory,
            approver_id=approver_id,
            approval_comments=approval_comments,
        )


def record_counts(store, company_id: str, count_id: str, lines: list, actor_id: str, now: Optional[datetime] = None) -> StockCount:
    """
    Records counted quantities. Counting the first item starts a draft count; counting
    the last pending item completes an in-progress one.
    """
    if not actor_id:
        raise InvalidInput("actor_id is required", field="actor_id")
    clean = []
    for ln in lines or []:
        if not ln.get("id"):
            raise InvalidInput("line id is required", field="id")
        qty = ln.get("counted_quantity")
        if qty is not None:
            qty = Decimal(str(qty))
            if qty < 0:
                raise InvalidInput("counted_quantity must be >= 0", field="counted_quantity")
        clean.append({"id": str(ln["id"]), "counted_quantity": qty, "notes": ln.get("notes")})
    now = _now(now)

    with store.transaction():
        count = load_count(store, company_id, count_id, for_update=True)
        if count.status not in EDITABLE_STATUSES:
            raise PreconditionFailed(
                "record counts",
                EDITABLE_STATUSES,
                count.status,
                "count is frozen" if count.is_frozen else "count has been submitted for approval",
            )
        if not clean:
            return count

        known = {i.id for i in store.list_items(company_id, count_id)}
        missing = [ln["id"] for ln in clean if ln["id"] not in known]
        if missing:
            raise NotFound("stock count item", missing[0])

        store.record_item_counts(company_id, count_id, clean, actor_id, now)

        if count.status == "draft" and any(ln["counted_quantity"] is not None for ln in clean):
            count = _start(store, count, actor_id, now)

        items = store.list_items(company_id, count_id)
        items_counted, variance_count = derived_counts(items)
        target = count.status
        extra = {}
        if count.status == "in_progress" and items and items_counted == len(items):
            target = "completed"
            extra["completed_at"] = now
        return write_status(
            store,
            count,
            target,
            actor_id,
            "complete" if target != count.status else "record counts",
            items_counted=items_counted,
            variance_count=variance_count,
            **extra,
        )
