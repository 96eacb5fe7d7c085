# rule_scheduler/tasks.py
"""Periodic scheduler jobs; each run opens its own database connection"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

from rule_scheduler.celery_app import celery_app
from rule_scheduler.core.config import get_settings
from rule_scheduler.core.database import close_database, init_database
from rule_scheduler.models.schemas import OptimizationType
from rule_scheduler.services.inference import create_inference_backend
from rule_scheduler.services.predictive_scheduler import PredictiveSchedulingEngine
from rule_scheduler.services.resource_monitor import PsutilResourceSampler
from rule_scheduler.services.resource_optimizer import ResourceOptimizationEngine
from rule_scheduler.services.store import SchedulerStore

logger = logging.getLogger(__name__)


async def _with_store(job: Callable[[SchedulerStore], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
    session_maker = await init_database(get_settings())
    try:
        return await job(SchedulerStore(session_maker))
    finally:
        await close_database()


async def _optimize(store: SchedulerStore) -> Dict[str, Any]:
    settings = get_settings()
    if not settings.auto_optimization_enabled:
        return {"status": "skipped"}
    engine = ResourceOptimizationEngine(store, settings, sampler=PsutilResourceSampler(settings))
    result = await engine.optimize_schedule(optimization_type=OptimizationType.LOAD_BALANCING)
    return {
        "status": result.status.value,
        "result_id": result.id,
        "efficiency_gain": result.improvement_metrics.efficiency_gain,
    }


async def _predict(store: SchedulerStore) -> Dict[str, Any]:
    settings = get_settings()
    inference = create_inference_backend(settings)
    try:
        engine = PredictiveSchedulingEngine(store, settings, inference=inference)
        predictions = await engine.generate_predictions(settings.optimization_horizon_hours)
    finally:
        await inference.close()
    return {
        "status": "done",
        "predictions": len(predictions),
        "scheduled": sum(1 for p in predictions if p.is_scheduled),
    }


async def _expire(store: SchedulerStore) -> Dict[str, Any]:
    engine = PredictiveSchedulingEngine(store, get_settings())
    return {"status": "done", "expired": await engine.expire_stale_predictions()}


@celery_app.task(name="rule_scheduler.tasks.optimize_schedule")
def optimize_schedule_task():
    result = asyncio.run(_with_store(_optimize))
    logger.info(f"Periodic optimization finished: {result}")
    return result


@celery_app.task(name="rule_scheduler.tasks.generate_predictions")
def generate_predictions_task():
    result = asyncio.run(_with_store(_predict))
    logger.info(f"Periodic prediction run finished: {result}")
    return result


@celery_app.task(name="rule_scheduler.tasks.expire_predictions")
def expire_predictions_task():
    return asyncio.run(_with_store(_expire))
