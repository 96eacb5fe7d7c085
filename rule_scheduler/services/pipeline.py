# rule_scheduler/services/pipeline.py
import asyncio
import time
import uuid
from datetime import datetime
from typing import List, Optional, Sequence

import structlog

from rule_scheduler.core.config import Settings, get_settings
from rule_scheduler.core.logging import LogContext, log_performance
from rule_scheduler.models.schemas import (
    OptimizationType, PipelineRunResponse, PredictiveSchedule, RuleGenerationResponse
)
from rule_scheduler.services.predictive_scheduler import PredictiveSchedulingEngine
from rule_scheduler.services.resource_optimizer import ResourceOptimizationEngine
from rule_scheduler.services.rule_generation import RuleGenerationEngine

logger = structlog.get_logger(__name__)


class SchedulingPipeline:
    """Runs pattern → rules → predictions → optimization as one cancellable cycle"""

    def __init__(self, rule_engine: RuleGenerationEngine,
                 predictive_engine: PredictiveSchedulingEngine,
                 optimization_engine: ResourceOptimizationEngine,
                 settings: Optional[Settings] = None):
        self.rule_engine = rule_engine
        self.predictive_engine = predictive_engine
        self.optimization_engine = optimization_engine
        self.settings = settings or get_settings()

    async def run_cycle(self, pattern_ids: Optional[Sequence[str]] = None, horizon_hours: int = 24,
                        optimization_type: OptimizationType = OptimizationType.LOAD_BALANCING,
                        backend: str = "auto", timeout_seconds: Optional[float] = None,
                        now: Optional[datetime] = None) -> PipelineRunResponse:
        """Run all three stages; ``asyncio.TimeoutError`` propagates when the budget runs out"""
        if timeout_seconds is not None:
            return await asyncio.wait_for(
                self._run(pattern_ids, horizon_hours, optimization_type, backend, now),
                timeout=timeout_seconds
            )
        return await self._run(pattern_ids, horizon_hours, optimization_type, backend, now)

    async def _run(self, pattern_ids: Optional[Sequence[str]], horizon_hours: int,
                   optimization_type: OptimizationType, backend: str,
                   now: Optional[datetime]) -> PipelineRunResponse:
        start = time.perf_counter()
        skipped: List[str] = []

        with LogContext(pipeline_run_id=str(uuid.uuid4())):
            try:
                rule_backend = "ollama" if backend == "auto" else backend
                rules: RuleGenerationResponse = await self.rule_engine.generate_rules(pattern_ids, rule_backend)
                logger.info("pipeline_stage_completed", stage="rule_generation",
                            generated=rules.generation_summary.total_generated)

                predictions: List[PredictiveSchedule] = []
                if self.settings.predictive_scheduling_enabled:
                    predictions = await self.predictive_engine.generate_predictions(horizon_hours, backend, now=now)
                    logger.info("pipeline_stage_completed", stage="predictive_scheduling",
                                predictions=len(predictions))
                else:
                    skipped.append("predictive_scheduling")

                optimization = None
                if self.settings.auto_optimization_enabled:
                    optimization = await self.optimization_engine.optimize_schedule(
                        target_date=now, optimization_type=optimization_type, backend=backend
                    )
                    logger.info("pipeline_stage_completed", stage="resource_optimization",
                                status=optimization.status.value,
                                efficiency_gain=optimization.improvement_metrics.efficiency_gain)
                else:
                    skipped.append("resource_optimization")

            except asyncio.CancelledError:
                logger.warning("pipeline_cancelled")
                log_performance("pipeline_cycle", (time.perf_counter() - start) * 1000, success=False)
                raise

            duration_ms = int((time.perf_counter() - start) * 1000)
            log_performance("pipeline_cycle", duration_ms, skipped_stages=skipped)

        return PipelineRunResponse(
            rule_generation=rules,
            predictions=predictions,
            optimization=optimization,
            skipped_stages=skipped,
            duration_ms=duration_ms
        )
