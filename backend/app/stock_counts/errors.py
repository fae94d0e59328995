from __future__ import annotations

from typing import Optional


class StockCountError(Exception):
    """Base for every error the stock count engine raises."""

    code = "stock_count_error"
    status_code = 400

    def __init__(self, message: str, **payload):
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.payload}


class NotFound(StockCountError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found", entity=entity, id=str(entity_id))


class InvalidInput(StockCountError):
    code = "invalid_input"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, field=field)


class ResolutionError(StockCountError):
    code = "approver_resolution_failed"
    status_code = 503

    def __init__(self, company_id: str, site_id: Optional[str], cause: str):
        super().__init__(
            "could not reach the people directory to resolve approvers",
            company_id=str(company_id),
            site_id=str(site_id) if site_id else None,
            cause=cause,
        )


# Hint shown to the user for each status a finalize/reconcile can be attempted from.
_FINALIZE_HINTS = {
    "draft": "count the items and mark ready for approval first",
    "in_progress": "finish counting and mark ready for approval first",
    "completed": "mark ready for approval first",
    "ready_for_approval": "awaiting approval",
    "finalized": "count is already finalized",
    "locked": "count is locked",
}


class PreconditionFailed(StockCountError):
    code = "precondition_failed"
    status_code = 409

    def __init__(self, action: str, required, actual: str, hint: Optional[str] = None):
        if isinstance(required, (list, tuple, set, frozenset)):
            required = sorted(required)
            required_txt = " or ".join(required)
        else:
            required_txt = required
        if hint is None and action in {"finalize", "reconcile"}:
            hint = _FINALIZE_HINTS.get(actual)
        msg = f"cannot {action}: stock count must be {required_txt}, but is {actual}"
        if hint:
            msg += f" ({hint})"
        super().__init__(msg, action=action, required=required, actual=actual, hint=hint)
        self.required = required
        self.actual = actual


class ApproverNotEligible(StockCountError):
    code = "approver_not_eligible"
    status_code = 403

    def __init__(
        self,
        actor_id: str,
        site_id: str,
        eligible_ids,
        nominated_approver_id: Optional[str] = None,
    ):
        eligible = sorted(str(i) for i in eligible_ids)
        nominee = str(nominated_approver_id) if nominated_approver_id else None
        stale = bool(nominee) and str(actor_id) == nominee
        # The nominee is still eligible, so nobody else may approve.
        assigned_only = bool(nominee) and not stale and nominee in eligible and str(actor_id) in eligible
        if stale:
            msg = (
                f"approver {actor_id} was nominated when the count was submitted "
                f"but is no longer authorized to approve counts for site {site_id}"
            )
        elif assigned_only:
            msg = f"only the assigned approver {nominee} can approve this stock count"
        elif not eligible:
            msg = f"no one is currently authorized to approve counts for site {site_id}"
        else:
            msg = f"user {actor_id} is not an eligible approver for site {site_id}"
        super().__init__(
            msg,
            actor_id=str(actor_id),
            site_id=str(site_id),
            nominated_approver_id=nominee,
            eligible_ids=eligible,
            stale=stale,
            assigned_only=assigned_only,
        )
        self.stale = stale
        self.assigned_only = assigned_only


class ConcurrentModification(StockCountError):
    code = "concurrent_modification"
    status_code = 409

    def __init__(self, count_id: str, expected_status: str):
        super().__init__(
            f"stock count was modified concurrently (expected status {expected_status}); reload and retry",
            count_id=str(count_id),
            expected_status=expected_status,
        )


class ReconciliationFailed(StockCountError):
    code = "reconciliation_failed"
    status_code = 500

    def __init__(
        self,
        count_id: str,
        cause: str,
        item_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ):
        where = ""
        if batch_id:
            where = f" at batch {batch_id}"
        elif item_id:
            where = f" at item {item_id}"
        super().__init__(
            f"reconciliation failed{where}: {cause}. No changes were made; the count is still approved.",
            count_id=str(count_id),
            item_id=str(item_id) if item_id else None,
            batch_id=str(batch_id) if batch_id else None,
            cause=cause,
        )
        self.item_id = item_id
        self.batch_id = batch_id
