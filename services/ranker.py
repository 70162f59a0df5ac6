"""
Association Ranker Service
Canonical retention, ranking views and lift tier classification
"""
from typing import List, Iterable, Optional, Sequence
import logging

from schemas import LIFT_DECIMALS, ProductPairAssociation, AssociationTier
from settings import AnalysisSettings

logger = logging.getLogger(__name__)

TIER_LABELS = ("Very Strong", "Strong", "Moderate")
WEAK_LABEL = "Weak"


# Sort order for stock codes when every metric ties
def _pair_key(pair: ProductPairAssociation):
    return (pair.product_a, pair.product_b)


def classify_lift(
    lift: float,
    tiers: Sequence[float] = (5.0, 3.0, 2.0),
    discounts: Sequence[int] = (15, 10, 7),
) -> AssociationTier:
    """Map a lift value to its strength bracket.

    Brackets are checked from the strongest down; anything under the last
    boundary is "Weak" and takes the last discount as its floor.
    """
    for priority, (boundary, label, discount) in enumerate(zip(tiers, TIER_LABELS, discounts), start=1):
        if lift >= boundary:
            return AssociationTier(label=label, discount_pct=discount, priority=priority)
    return AssociationTier(label=WEAK_LABEL, discount_pct=discounts[-1], priority=len(tiers) + 1)


def retain_canonical(
    pairs: Iterable[ProductPairAssociation], settings: Optional[AnalysisSettings] = None
) -> List[ProductPairAssociation]:
    """Pairs with lift strictly above min_lift and enough co-occurring orders.

    Lift is compared at its published precision, so a stored pair never shows
    a lift equal to the floor.
    """
    settings = settings or AnalysisSettings()
    pairs = list(pairs)
    kept = [
        p for p in pairs
        if round(p.lift, LIFT_DECIMALS) > settings.min_lift and p.orders_with_both >= settings.min_cooccurrence
    ]
    logger.debug(f"Canonical retention kept {len(kept)}/{len(pairs)} pairs (min_lift={settings.min_lift})")
    return kept


def rank_by_lift(pairs: Iterable[ProductPairAssociation]) -> List[ProductPairAssociation]:
    """Lift descending, ties broken by orders_with_both descending."""
    return sorted(pairs, key=lambda p: (-p.lift, -p.orders_with_both, _pair_key(p)))


def rank_by_support(pairs: Iterable[ProductPairAssociation]) -> List[ProductPairAssociation]:
    return sorted(pairs, key=lambda p: (-p.support_ab, -p.lift, _pair_key(p)))


def rank_by_confidence(pairs: Iterable[ProductPairAssociation]) -> List[ProductPairAssociation]:
    """Stronger of the two directional confidences, descending."""
    return sorted(pairs, key=lambda p: (-p.best_confidence, -p.lift, _pair_key(p)))


# Sort views by name, mirrored by the stored-pair orderings
RANKINGS = {
    "lift": rank_by_lift,
    "support": rank_by_support,
    "confidence": rank_by_confidence,
}


def top_associations(
    pairs: Iterable[ProductPairAssociation], n: int = 100, min_lift: float = 1.5
) -> List[ProductPairAssociation]:
    """At most n pairs with lift >= min_lift, strongest first."""
    if n < 0:
        raise ValueError(f"n must be >= 0, got {n}")
    return rank_by_lift(p for p in pairs if p.lift >= min_lift)[:n]
