"""
Association Rules Router
Handles association rules generation and retrieval
"""
from fastapi import APIRouter, HTTPException, BackgroundTasks
from pydantic import BaseModel
from typing import Optional, Dict, Any
import logging
import uuid

from schemas import ProductPairAssociation
from services.association_rules_engine import (
    AssociationRulesEngine,
    AnalysisInProgressError,
    acquire_run_slot,
    release_run_slot,
)
from services.ranker import RANKINGS, classify_lift
from services.storage import storage
from settings import AnalysisSettings, ConfigurationError, load_analysis_settings

logger = logging.getLogger(__name__)
router = APIRouter()


class GenerateRulesRequest(BaseModel):
    minCooccurrence: Optional[int] = None
    minLift: Optional[float] = None


def serialize_pair(pair: ProductPairAssociation, settings: AnalysisSettings) -> Dict[str, Any]:
    row = dict(pair.to_dict())
    tier = classify_lift(pair.lift, settings.lift_tiers, settings.tier_discounts)
    row["tier"] = tier.label
    row["recommendedDiscountPct"] = tier.discount_pct
    return row


def serialize_run(run) -> Dict[str, Any]:
    return {
        "id": run.id,
        "status": run.status,
        "minCooccurrence": run.min_cooccurrence,
        "minLift": run.min_lift,
        "totalOrders": run.total_orders,
        "pairsFound": run.pairs_found,
        "pairsPublished": run.pairs_published,
        "metrics": run.metrics,
        "errorMessage": run.error_message,
        "startedAt": run.started_at.isoformat() if run.started_at is not None else None,
        "completedAt": run.completed_at.isoformat() if run.completed_at is not None else None,
    }


@router.post("/generate-rules")
async def generate_rules(request: GenerateRulesRequest, background_tasks: BackgroundTasks):
    """Start an analysis run in the background"""
    try:
        settings = load_analysis_settings().with_overrides(
            min_cooccurrence=request.minCooccurrence,
            min_lift=request.minLift,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # Slot is held from here until the background task finishes
    try:
        await acquire_run_slot()
    except AnalysisInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))

    try:
        run = await storage.create_analysis_run({
            "id": str(uuid.uuid4()),
            "status": "running",
            "min_cooccurrence": settings.min_cooccurrence,
            "min_lift": settings.min_lift,
        })
    except Exception as e:
        release_run_slot()
        logger.error(f"Rules generation error: {e}")
        raise HTTPException(status_code=500, detail="Failed to start association rules generation")

    background_tasks.add_task(generate_rules_background, run.id, settings)
    logger.info(
        f"Scheduled analysis run {run.id} minCooccurrence={settings.min_cooccurrence} minLift={settings.min_lift}"
    )
    return {"success": True, "analysisRunId": run.id}


@router.get("/analysis-runs/{run_id}")
async def get_analysis_run(run_id: str):
    run = await storage.get_analysis_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Analysis run {run_id} not found")
    return serialize_run(run)


@router.get("/association-rules")
async def get_association_rules(orderBy: str = "lift", limit: int = 100):
    """Canonical association set ranked by lift, support or confidence"""
    if orderBy not in RANKINGS:
        raise HTTPException(
            status_code=400,
            detail=f"orderBy must be one of: {', '.join(sorted(RANKINGS))}",
        )
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be >= 1")

    try:
        settings = load_analysis_settings()
        pairs = await storage.get_product_pairs(order_by=orderBy, limit=limit)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Get association rules error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get association rules")

    return [serialize_pair(p, settings) for p in pairs]


@router.get("/association-rules/top")
async def get_top_association_rules(limit: Optional[int] = None, minLift: Optional[float] = None):
    """Strongest associations above a lift floor"""
    try:
        settings = load_analysis_settings()
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    limit = settings.top_n if limit is None else limit
    min_lift = settings.top_min_lift if minLift is None else minLift
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be >= 1")
    if min_lift < 0:
        raise HTTPException(status_code=400, detail="minLift must be >= 0")

    try:
        pairs = await storage.get_product_pairs(order_by="lift", limit=limit, min_lift=min_lift)
    except Exception as e:
        logger.error(f"Get top association rules error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get top association rules")

    return [serialize_pair(p, settings) for p in pairs]


async def generate_rules_background(run_id: str, settings: AnalysisSettings):
    """Background task to generate association rules; owns the reserved run slot"""
    try:
        engine = AssociationRulesEngine(settings=settings)
        await engine.generate_association_rules(run_id, slot_reserved=True)
    except Exception as e:
        # Run row already marked failed by the engine
        logger.error(f"Background rules generation error for run {run_id}: {e}")
    finally:
        release_run_slot()
