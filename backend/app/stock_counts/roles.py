from __future__ import annotations

from typing import Iterable, Optional

APPROVER_ROLES = (
    "Owner",
    "Admin",
    "Manager",
    "General Manager",
    "Area Manager",
    "Regional Manager",
)

# Preference order when recommending a single approver: closest to the site first.
TIER_PREFERENCE = ("site", "area", "regional", "executive")


def roles_authorized_for_approval() -> tuple:
    """Roles allowed to approve stock counts. Same for every company and site."""
    return APPROVER_ROLES


def is_approver_role(role: Optional[str]) -> bool:
    r = (role or "").strip().lower()
    return bool(r) and r in {x.lower() for x in APPROVER_ROLES}


def approver_tier(role: Optional[str]) -> str:
    r = (role or "").strip().lower()
    if "owner" in r or "admin" in r:
        return "executive"
    if "regional" in r:
        return "regional"
    if "area" in r:
        return "area"
    if "site" in r or "manager" in r:
        return "site"
    return "other"


def recommend(candidates: Iterable):
    by_tier: dict = {}
    for c in candidates:
        by_tier.setdefault(c.tier, []).append(c)
    for tier in TIER_PREFERENCE:
        if by_tier.get(tier):
            return by_tier[tier][0]
    return next(iter(by_tier.get("other", [])), None)
