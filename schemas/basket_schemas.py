"""
Basket Analysis Schemas
=======================

Canonical data structures passed between the pipeline stages.

PIPELINE:
---------
raw CSV row -> TransactionRecord      (cleaning, one per line item)
            -> OrderProductPair       (distinct invoice x stock code)
            -> ProductSupport         (per product order frequency)
            -> ProductPairAssociation (per canonical pair metrics)

All structures are immutable once built. A ProductPairAssociation always has
product_a < product_b so each unordered pair appears exactly once.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, TypedDict

# Published precision of the product_pairs metric columns
RATIO_DECIMALS = 6
LIFT_DECIMALS = 4


# =============================================================================
# TYPE DEFINITIONS (TypedDict for API payloads)
# =============================================================================

class ProductPairDict(TypedDict, total=False):
    """Association row as returned by the API."""
    productA: str
    productADesc: Optional[str]
    productB: str
    productBDesc: Optional[str]
    ordersWithBoth: int
    supportA: float
    supportB: float
    supportAB: float
    confidenceAtoB: float
    confidenceBtoA: float
    lift: float
    totalOrders: int
    tier: str
    recommendedDiscountPct: int


class CleaningReportDict(TypedDict, total=False):
    """Data quality summary for one ingestion."""
    rowsRead: int
    rowsLoaded: int
    rowsDroppedInvalidDate: int
    validRows: int
    cleaningRatePct: float
    invalidReasons: Dict[str, int]


# =============================================================================
# DATACLASSES
# =============================================================================

@dataclass(frozen=True)
class TransactionRecord:
    """One cleaned line item. is_valid is derived from the other fields."""
    invoice_no: str
    stock_code: str
    description: Optional[str]
    quantity: Optional[int]
    invoice_date: datetime
    unit_price: Optional[Decimal]
    unit_price_usd: Optional[Decimal]
    line_total_usd: Optional[Decimal]
    customer_id: Optional[int]
    country: str
    is_cancellation: bool
    is_return: bool
    is_valid: bool
    year: int
    month: int
    day_of_week: str
    hour: int

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class OrderProductPair:
    """Distinct (invoice, product) incidence with a display description."""
    invoice_no: str
    stock_code: str
    description: str


@dataclass(frozen=True)
class ProductSupport:
    stock_code: str
    description: str
    order_count: int
    support: float


@dataclass(frozen=True)
class ProductPairAssociation:
    """Metrics for a canonical product pair (product_a < product_b)."""
    product_a: str
    product_a_desc: Optional[str]
    product_b: str
    product_b_desc: Optional[str]
    orders_with_both: int
    support_a: float
    support_b: float
    support_ab: float
    confidence_a_to_b: float
    confidence_b_to_a: float
    lift: float
    total_orders: int

    @property
    def best_confidence(self) -> float:
        return max(self.confidence_a_to_b, self.confidence_b_to_a)

    def to_dict(self) -> ProductPairDict:
        return {
            "productA": self.product_a,
            "productADesc": self.product_a_desc,
            "productB": self.product_b,
            "productBDesc": self.product_b_desc,
            "ordersWithBoth": self.orders_with_both,
            "supportA": self.support_a,
            "supportB": self.support_b,
            "supportAB": self.support_ab,
            "confidenceAtoB": self.confidence_a_to_b,
            "confidenceBtoA": self.confidence_b_to_a,
            "lift": self.lift,
            "totalOrders": self.total_orders,
        }


@dataclass(frozen=True)
class AssociationTier:
    """Lift bucket with the discount it recommends; priority 1 is the strongest."""
    label: str
    discount_pct: int
    priority: int
