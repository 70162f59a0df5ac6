"""
Business Insights
Bundle, cross-sell and summary projections over the published association set
"""
from typing import Dict, List, Any, Iterable, Optional, Sequence
import logging
import numpy as np

from schemas import ProductPairAssociation
from settings import AnalysisSettings
from services.ranker import classify_lift, rank_by_lift

logger = logging.getLogger(__name__)


def recommend_bundles(
    pairs: Iterable[ProductPairAssociation],
    limit: int = 5,
    min_lift: float = 3.0,
    min_orders: int = 30,
    min_support_ab: float = 0.001,
    settings: Optional[AnalysisSettings] = None,
) -> List[Dict[str, Any]]:
    """Top bundles worth implementing, strongest association first."""
    settings = settings or AnalysisSettings()
    candidates = [
        p for p in pairs
        if p.lift >= min_lift and p.orders_with_both >= min_orders and p.support_ab >= min_support_ab
    ]

    bundles = []
    for rank, pair in enumerate(rank_by_lift(candidates)[:limit], start=1):
        tier = classify_lift(pair.lift, settings.lift_tiers, settings.tier_discounts)
        bundles.append({
            "rank": rank,
            "bundleSku": f"{pair.product_a} + {pair.product_b}",
            "product1": pair.product_a_desc,
            "product2": pair.product_b_desc,
            "lift": round(pair.lift, 4),
            "crossSellProbabilityPct": round(pair.confidence_a_to_b * 100, 1),
            "historicalOrders": pair.orders_with_both,
            "marketPenetrationPct": round(pair.orders_with_both * 100.0 / pair.total_orders, 2),
            "tier": tier.label,
            "recommendedDiscountPct": tier.discount_pct,
            "priority": tier.priority,
        })
    return bundles


def cross_sell_for_product(
    pairs: Iterable[ProductPairAssociation],
    stock_code: str,
    slots: int = 3,
    min_lift: float = 2.0,
) -> List[Dict[str, Any]]:
    """"Frequently bought together" partners for one product.

    Conversion rate is the confidence in the direction product -> partner,
    so it depends on which side of the canonical pair the product sits.
    """
    recommendations = []
    for pair in rank_by_lift(p for p in pairs if p.lift >= min_lift):
        if pair.product_a == stock_code:
            partner, partner_desc, confidence = pair.product_b, pair.product_b_desc, pair.confidence_a_to_b
        elif pair.product_b == stock_code:
            partner, partner_desc, confidence = pair.product_a, pair.product_a_desc, pair.confidence_b_to_a
        else:
            continue
        recommendations.append({
            "slot": len(recommendations) + 1,
            "stockCode": partner,
            "description": partner_desc,
            "lift": round(pair.lift, 4),
            "conversionRatePct": round(confidence * 100, 1),
            "timesPurchasedTogether": pair.orders_with_both,
        })
        if len(recommendations) >= slots:
            break
    return recommendations


def summarize_analysis(
    pairs: Sequence[ProductPairAssociation],
    basket_sizes: Sequence[int],
    total_orders: int,
) -> Dict[str, Any]:
    """Executive summary of one analysis run."""
    sizes = np.asarray(basket_sizes, dtype=float)
    if sizes.size:
        avg_size = round(float(np.mean(sizes)), 2)
        median_size = round(float(np.median(sizes)), 2)
        p95_size = round(float(np.percentile(sizes, 95)), 2)
    else:
        avg_size = median_size = p95_size = 0.0

    lifts = np.asarray([p.lift for p in pairs], dtype=float)
    strongest = round(float(lifts.max()), 4) if lifts.size else None

    return {
        "totalOrdersAnalyzed": total_orders,
        "associationsFound": int(np.count_nonzero(lifts >= 1)),
        "strongAssociations": int(np.count_nonzero(lifts >= 3)),
        "avgBasketSize": avg_size,
        "medianBasketSize": median_size,
        "p95BasketSize": p95_size,
        "strongestLift": strongest,
    }
