# rule_scheduler/api/v1/endpoints/scheduling.py
"""
Scheduling API endpoints
Rule generation, predictive scheduling and resource optimization
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from rule_scheduler.api.deps import (
    get_app_settings, get_optimization_engine, get_pipeline,
    get_predictive_engine, get_rule_engine, get_store
)
from rule_scheduler.core.config import Settings
from rule_scheduler.core.database import get_database_health
from rule_scheduler.core.exceptions import SchedulerServiceException
from rule_scheduler.models.schemas import (
    ActivityPattern, CronValidationRequest, CronValidationResult, HealthResponse,
    OptimizationRequest, OptimizationResult, PipelineRunRequest, PipelineRunResponse,
    PredictionOutcomeRequest, PredictionRequest, PredictiveSchedule,
    RuleGenerationRequest, RuleGenerationResponse, RuleUpdateRequest, SchedulingRule
)
from rule_scheduler.services.pipeline import SchedulingPipeline
from rule_scheduler.services.predictive_scheduler import PredictiveSchedulingEngine
from rule_scheduler.services.resource_optimizer import ResourceOptimizationEngine
from rule_scheduler.services.rule_generation import RuleGenerationEngine
from rule_scheduler.services.store import SchedulerStore
from rule_scheduler.utils.clock import utcnow

logger = logging.getLogger(__name__)
router = APIRouter()


# Patterns

@router.post("/patterns", response_model=ActivityPattern, status_code=status.HTTP_201_CREATED)
async def register_pattern(
    pattern: ActivityPattern,
    store: SchedulerStore = Depends(get_store)
):
    """Store a detected activity pattern so later generation runs pick it up"""
    try:
        saved = await store.save_pattern(pattern)
        logger.info(f"Registered {saved.pattern_type.value} pattern {saved.id}")
        return saved
    except SchedulerServiceException:
        raise
    except Exception as e:
        logger.error(f"Pattern registration failed: {e}")
        raise HTTPException(status_code=500, detail=f"Pattern registration failed: {str(e)}")


# Rules

@router.post("/rules/generate", response_model=RuleGenerationResponse)
async def generate_rules(
    request: RuleGenerationRequest,
    engine: RuleGenerationEngine = Depends(get_rule_engine)
):
    """
    Generate scheduling rules from active activity patterns.
    Conflicts with existing enabled rules are resolved before anything is stored.
    """
    try:
        return await engine.generate_rules(request.pattern_ids, request.backend.value)
    except SchedulerServiceException:
        raise
    except Exception as e:
        logger.error(f"Rule generation failed: {e}")
        raise HTTPException(status_code=500, detail=f"Rule generation failed: {str(e)}")


@router.get("/rules", response_model=List[SchedulingRule])
async def list_rules(
    enabled: Optional[bool] = None,
    pattern_id: Optional[str] = None,
    min_confidence: Optional[float] = Query(None, ge=0, le=1),
    engine: RuleGenerationEngine = Depends(get_rule_engine)
):
    """List rules, most urgent first"""
    try:
        return await engine.list_rules(enabled=enabled, pattern_id=pattern_id, min_confidence=min_confidence)
    except SchedulerServiceException:
        raise
    except Exception as e:
        logger.error(f"Listing rules failed: {e}")
        raise HTTPException(status_code=500, detail=f"Listing rules failed: {str(e)}")


@router.post("/rules/validate-cron", response_model=CronValidationResult)
async def validate_cron(request: CronValidationRequest):
    return RuleGenerationEngine.validate_cron(request.cron_expression)


@router.get("/rules/{rule_id}", response_model=SchedulingRule)
async def get_rule(
    rule_id: str,
    engine: RuleGenerationEngine = Depends(get_rule_engine)
):
    return await engine.get_rule(rule_id)


@router.patch("/rules/{rule_id}", response_model=SchedulingRule)
async def update_rule(
    rule_id: str,
    request: RuleUpdateRequest,
    engine: RuleGenerationEngine = Depends(get_rule_engine)
):
    """Partially update a rule; enabling or retiming it re-runs conflict resolution"""
    try:
        return await engine.update_rule(rule_id, request.model_dump(exclude_unset=True))
    except SchedulerServiceException:
        raise
    except Exception as e:
        logger.error(f"Updating rule {rule_id} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Rule update failed: {str(e)}")


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: str,
    engine: RuleGenerationEngine = Depends(get_rule_engine)
):
    await engine.delete_rule(rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Predictions

@router.post("/predictions/generate", response_model=List[PredictiveSchedule])
async def generate_predictions(
    request: PredictionRequest,
    engine: PredictiveSchedulingEngine = Depends(get_predictive_engine)
):
    """
    Project task occurrences over the requested horizon.
    High-confidence predictions come back already scheduled; an empty list
    when predictive scheduling is switched off.
    """
    try:
        return await engine.generate_predictions(request.horizon_hours, request.backend.value)
    except SchedulerServiceException:
        raise
    except Exception as e:
        logger.error(f"Prediction generation failed: {e}")
        raise HTTPException(status_code=500, detail=f"Prediction generation failed: {str(e)}")


@router.get("/predictions", response_model=List[PredictiveSchedule])
async def list_predictions(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    scheduled: Optional[bool] = None,
    engine: PredictiveSchedulingEngine = Depends(get_predictive_engine)
):
    try:
        return await engine.list_predictions(start=start, end=end, scheduled=scheduled)
    except SchedulerServiceException:
        raise
    except Exception as e:
        logger.error(f"Listing predictions failed: {e}")
        raise HTTPException(status_code=500, detail=f"Listing predictions failed: {str(e)}")


@router.post("/predictions/{prediction_id}/outcome", response_model=PredictiveSchedule)
async def record_prediction_outcome(
    prediction_id: str,
    request: PredictionOutcomeRequest,
    engine: PredictiveSchedulingEngine = Depends(get_predictive_engine)
):
    """Record when the predicted task actually ran and score the prediction"""
    return await engine.record_outcome(prediction_id, request.actual_execution_time)


# Optimization

@router.post("/optimizations", response_model=OptimizationResult)
async def optimize_schedule(
    request: OptimizationRequest,
    engine: ResourceOptimizationEngine = Depends(get_optimization_engine)
):
    """
    Run one optimization pass over the look-ahead window.
    Rule changes are committed only when the efficiency gain clears the threshold.
    """
    try:
        return await engine.optimize_schedule(
            target_date=request.target_date,
            optimization_type=request.optimization_type,
            backend=request.backend.value
        )
    except SchedulerServiceException:
        raise
    except Exception as e:
        logger.error(f"Schedule optimization failed: {e}")
        raise HTTPException(status_code=500, detail=f"Schedule optimization failed: {str(e)}")


@router.get("/optimizations", response_model=List[OptimizationResult])
async def list_optimizations(
    limit: int = Query(20, ge=1, le=200),
    engine: ResourceOptimizationEngine = Depends(get_optimization_engine)
):
    return await engine.list_optimization_results(limit)


@router.get("/optimizations/{result_id}", response_model=OptimizationResult)
async def get_optimization(
    result_id: str,
    engine: ResourceOptimizationEngine = Depends(get_optimization_engine)
):
    result = await engine.get_optimization_result(result_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Optimization result '{result_id}' not found")
    return result


# Pipeline

@router.post("/pipeline/run", response_model=PipelineRunResponse)
async def run_pipeline(
    request: PipelineRunRequest,
    pipeline: SchedulingPipeline = Depends(get_pipeline)
):
    """Run rule generation, prediction and optimization as one cycle"""
    try:
        return await pipeline.run_cycle(
            pattern_ids=request.pattern_ids,
            horizon_hours=request.horizon_hours,
            optimization_type=request.optimization_type,
            timeout_seconds=request.timeout_seconds
        )
    except asyncio.TimeoutError:
        logger.warning(f"Pipeline cycle exceeded {request.timeout_seconds}s")
        raise HTTPException(status_code=504, detail="Pipeline cycle timed out")
    except SchedulerServiceException:
        raise
    except Exception as e:
        logger.error(f"Pipeline cycle failed: {e}")
        raise HTTPException(status_code=500, detail=f"Pipeline cycle failed: {str(e)}")


@router.get("/health", response_model=HealthResponse)
async def health(settings: Settings = Depends(get_app_settings)):
    """Service and database health"""
    try:
        database = await get_database_health()
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        database = {"status": "unhealthy", "error": str(e)}

    return HealthResponse(
        status="healthy" if database.get("status") == "healthy" else "degraded",
        version=settings.version,
        timestamp=utcnow(),
        database=database,
        features={
            "auto_generation": settings.auto_generation_enabled,
            "predictive_scheduling": settings.predictive_scheduling_enabled,
            "auto_optimization": settings.auto_optimization_enabled,
            "resource_reservation": settings.resource_reservation_enabled,
            "llm_inference": settings.llm_enabled,
        }
    )
