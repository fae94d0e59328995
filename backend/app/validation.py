from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical codes mirror the CHECK constraints in `backend/db/migrations/001_stock_counts.sql`.
StockCountStatus = Annotated[
    Literal["draft", "in_progress", "completed", "ready_for_approval", "approved", "finalized", "locked"],
    BeforeValidator(_to_lower_str),
]
CountFrequency = Annotated[Literal["weekly", "monthly", "adhoc"], BeforeValidator(_to_lower_str)]
CountAction = Annotated[
    Literal["start", "complete", "submit", "approve", "finalize", "lock"],
    BeforeValidator(_to_lower_str),
]
