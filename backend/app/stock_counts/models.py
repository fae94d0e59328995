from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

QTY_Q = Decimal("0.000001")
MONEY_Q = Decimal("0.01")
PCT_Q = Decimal("0.01")

# Lifecycle order. Index position is the monotonic rank of a status.
COUNT_STATUSES = (
    "draft",
    "in_progress",
    "completed",
    "ready_for_approval",
    "approved",
    "finalized",
    "locked",
)
ITEM_STATUSES = ("pending", "counted")
COUNT_FREQUENCIES = ("weekly", "monthly", "adhoc")

# Statuses in which item quantities may still be recorded.
EDITABLE_STATUSES = frozenset({"draft", "in_progress", "completed"})


def status_rank(status: str) -> int:
    return COUNT_STATUSES.index(status)


def q_qty(v) -> Decimal:
    return Decimal(str(v or 0)).quantize(QTY_Q, rounding=ROUND_HALF_UP)


def q_money(v) -> Decimal:
    return Decimal(str(v or 0)).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


@dataclass
class StockCount:
    id: str
    company_id: str
    site_id: str
    status: str
    name: str = ""
    count_date: Optional[date] = None
    frequency: str = "adhoc"
    total_items: int = 0
    items_counted: int = 0
    variance_count: int = 0
    total_variance_value: Decimal = Decimal("0")
    approver_id: Optional[str] = None
    created_by: Optional[str] = None
    submitted_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    finalized_by: Optional[str] = None
    finalized_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None

    @property
    def is_frozen(self) -> bool:
        return self.status in {"finalized", "locked"}


@dataclass
class StockCountItem:
    id: str
    count_id: str
    stock_item_id: str
    expected_quantity: Decimal
    status: str = "pending"
    batch_id: Optional[str] = None
    counted_quantity: Optional[Decimal] = None
    unit_cost: Optional[Decimal] = None
    notes: Optional[str] = None
    approval_comments: Optional[str] = None

    @property
    def has_variance(self) -> bool:
        if self.status != "counted" or self.counted_quantity is None:
            return False
        return q_qty(self.counted_quantity) != q_qty(self.expected_quantity)


@dataclass
class StockLevel:
    stock_item_id: str
    quantity: Decimal
    unit_cost: Optional[Decimal] = None


@dataclass
class StockBatch:
    id: str
    stock_item_id: str
    quantity_on_hand: Decimal
    is_depleted: bool = False
    batch_code: str = ""
    quantity_received: Decimal = Decimal("0")


@dataclass(frozen=True)
class ApproverCandidate:
    id: str
    display_name: str
    role: str
    email: Optional[str] = None
    tier: str = "other"


@dataclass(frozen=True)
class Diagnostics:
    """Why no approver could be found for a site."""

    company_id: str
    site_id: Optional[str]
    site_count: int
    company_count: int
    company_population: int
    roles_present: tuple = ()

    def to_dict(self) -> dict:
        return {
            "company_id": self.company_id,
            "site_id": self.site_id,
            "site_count": self.site_count,
            "company_count": self.company_count,
            "company_population": self.company_population,
            "roles_present": list(self.roles_present),
        }


@dataclass(frozen=True)
class Found:
    approvers: tuple
    scope: str  # "site" or "company"
    recommended: Optional[ApproverCandidate] = None

    @property
    def ids(self) -> set:
        return {a.id for a in self.approvers}


@dataclass(frozen=True)
class NoneFound:
    diagnostics: Diagnostics

    @property
    def ids(self) -> set:
        return set()


ApproverResolution = Union[Found, NoneFound]


@dataclass(frozen=True)
class VarianceRecord:
    item_id: str
    stock_item_id: str
    batch_id: Optional[str]
    expected_quantity: Decimal
    counted_quantity: Decimal
    variance_quantity: Decimal
    unit_cost: Decimal
    variance_value: Decimal
    variance_percent: Optional[Decimal] = None


@dataclass(frozen=True)
class BatchAdjustment:
    batch_id: str
    stock_item_id: str
    previous_quantity: Decimal
    quantity_on_hand: Decimal
    is_depleted: bool
    was_depleted: bool


@dataclass(frozen=True)
class StockAdjustment:
    stock_item_id: str
    previous_quantity: Decimal
    quantity: Decimal

    @property
    def delta(self) -> Decimal:
        return q_qty(self.quantity - self.previous_quantity)


@dataclass
class ReconciliationResult:
    count: StockCount
    variances: list = field(default_factory=list)
    stock_adjustments: list = field(default_factory=list)
    batch_adjustments: list = field(default_factory=list)
    total_variance_value: Decimal = Decimal("0")

    @property
    def depleted_batch_ids(self) -> list:
        return [b.batch_id for b in self.batch_adjustments if b.is_depleted]


@dataclass(frozen=True)
class MassBalance:
    total_produced: Decimal
    total_recovered: Decimal
    unaccounted: Decimal
    variance_percent: Decimal
    batch_count: int
    source: str  # "count" or "recall"
    source_id: str

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "source_id": self.source_id,
            "total_produced": self.total_produced,
            "total_recovered": self.total_recovered,
            "unaccounted": self.unaccounted,
            "variance_percent": self.variance_percent,
            "batch_count": self.batch_count,
        }
