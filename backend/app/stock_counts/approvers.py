"""
Approver resolution for stock counts.

Stages, each only when the previous one found nobody:
1. people at the site holding an approver role
2. people anywhere in the company holding an approver role (head office escalation)
3. a diagnostic snapshot of the company so the caller can explain the empty result
"""
from __future__ import annotations

from typing import Optional

import psycopg

from ..obs import json_log
from .errors import ResolutionError
from .models import ApproverCandidate, Diagnostics, Found, NoneFound
from .roles import approver_tier, recommend, roles_authorized_for_approval


def _candidates(rows) -> tuple:
    out = []
    for r in rows or []:
        name = (r.get("name") or "").strip() or (r.get("email") or "").strip() or str(r["id"])
        role = (r.get("role") or "").strip()
        out.append(
            ApproverCandidate(
                id=str(r["id"]),
                display_name=name,
                role=role,
                email=r.get("email"),
                tier=approver_tier(role),
            )
        )
    return tuple(out)


def resolve_approvers(directory, company_id: str, site_id: Optional[str]):
    roles = list(roles_authorized_for_approval())
    try:
        if site_id:
            found = _candidates(directory.list_people(company_id, site_id=site_id, roles=roles))
            if found:
                json_log("info", "stock_count.approvers.resolved", company_id=company_id, site_id=site_id, scope="site", count=len(found))
                return Found(approvers=found, scope="site", recommended=recommend(found))

        found = _candidates(directory.list_people(company_id, roles=roles))
        if found:
            json_log("info", "stock_count.approvers.resolved", company_id=company_id, site_id=site_id, scope="company", count=len(found))
            return Found(approvers=found, scope="company", recommended=recommend(found))

        everyone = directory.list_people(company_id)
        site_people = directory.list_people(company_id, site_id=site_id) if site_id else []
        roles_present = tuple(directory.distinct_roles(company_id))
    except psycopg.Error as exc:
        json_log("error", "stock_count.approvers.directory_error", company_id=company_id, site_id=site_id, error=str(exc))
        raise ResolutionError(company_id, site_id, str(exc)) from exc

    diag = Diagnostics(
        company_id=str(company_id),
        site_id=str(site_id) if site_id else None,
        site_count=len(site_people),
        company_count=0,
        company_population=len(everyone),
        roles_present=roles_present,
    )
    json_log("warning", "stock_count.approvers.none_found", **diag.to_dict())
    return NoneFound(diagnostics=diag)


def resolution_to_dict(resolution) -> dict:
    if isinstance(resolution, NoneFound):
        return {
            "status": "none_found",
            "approvers": [],
            "diagnostics": resolution.diagnostics.to_dict(),
        }
    rec = resolution.recommended
    return {
        "status": "found",
        "scope": resolution.scope,
        "approvers": [_candidate_dict(a) for a in resolution.approvers],
        "recommended_id": rec.id if rec else None,
    }


def _candidate_dict(a: ApproverCandidate) -> dict:
    return {"id": a.id, "display_name": a.display_name, "role": a.role, "email": a.email, "tier": a.tier}
