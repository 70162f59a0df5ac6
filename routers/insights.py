"""
Insights Router
Bundle, cross-sell and summary views over the published association set
"""
from fastapi import APIRouter, HTTPException
import logging

from services.insights import recommend_bundles, cross_sell_for_product, summarize_analysis
from services.storage import storage
from settings import ConfigurationError, load_analysis_settings

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/insights/bundles")
async def get_bundle_recommendations(
    limit: int = 5,
    minLift: float = 3.0,
    minOrders: int = 30,
    minSupport: float = 0.001,
):
    """Top product bundles to implement"""
    try:
        settings = load_analysis_settings()
        pairs = await storage.get_product_pairs(order_by="lift", limit=None, min_lift=minLift)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Bundle insights error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get bundle recommendations")

    return recommend_bundles(
        pairs,
        limit=limit,
        min_lift=minLift,
        min_orders=minOrders,
        min_support_ab=minSupport,
        settings=settings,
    )


@router.get("/insights/cross-sell/{stock_code}")
async def get_cross_sell(stock_code: str, slots: int = 3, minLift: float = 2.0):
    """"Frequently bought together" partners for one product"""
    try:
        pairs = await storage.get_product_pairs_for_product(stock_code)
    except Exception as e:
        logger.error(f"Cross-sell insights error for {stock_code}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get cross-sell recommendations")

    return {
        "stockCode": stock_code,
        "recommendations": cross_sell_for_product(pairs, stock_code, slots=slots, min_lift=minLift),
    }


@router.get("/insights/summary")
async def get_summary():
    """Executive summary of the current analysis"""
    try:
        pairs = await storage.get_product_pairs(order_by="lift", limit=None)
        counts = await storage.count_transactions()
        basket_sizes = await storage.get_basket_sizes()
    except Exception as e:
        logger.error(f"Summary insights error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get analysis summary")

    return summarize_analysis(pairs, basket_sizes, counts["valid_orders"])
