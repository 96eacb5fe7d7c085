# rule_scheduler/services/predictive_scheduler.py
import asyncio
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import logging

import numpy as np
import pandas as pd

from rule_scheduler.core.config import Settings, get_settings
from rule_scheduler.core.exceptions import PredictionNotFoundException, StoreUnavailableException
from rule_scheduler.core.monitoring import (
    ITEM_FAILURES, PREDICTIONS_COMMITTED, PREDICTIONS_MADE, track_duration
)
from rule_scheduler.models.schemas import (
    ActivityPattern, PredictionSource, PredictiveSchedule, SchedulingRule, UserBehaviorProfile
)
from rule_scheduler.services.cron import next_fire_in
from rule_scheduler.services.inference import InferenceBackend, NullInferenceBackend
from rule_scheduler.services.store import SchedulerStore
from rule_scheduler.services.task_materializer import StoreTaskMaterializer, TaskMaterializer
from rule_scheduler.services.task_profiles import UNKNOWN_TASK_TYPE, build_requirements, task_type_for_rule
from rule_scheduler.utils.clock import day_of_week, hour_bucket, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

MAX_PREDICTION_CONFIDENCE = 0.95
BEHAVIOR_PROBABILITY_THRESHOLD = 0.30
CORRELATION_STRENGTH_THRESHOLD = 0.4
CORRELATION_SUCCESS_THRESHOLD = 0.7


def recency_boost(last_detected_at: Optional[datetime], now: datetime) -> float:
    if last_detected_at is None:
        return 0.0
    days_since = (now - to_naive_utc(last_detected_at)).total_seconds() / 86400
    if days_since <= 1:
        return 0.10
    if days_since <= 7:
        return 0.05
    if days_since <= 30:
        return 0.02
    return 0.0


def limit_per_hour(predictions: List[PredictiveSchedule], max_per_hour: int) -> List[PredictiveSchedule]:
    """Keep the ``max_per_hour`` highest-confidence predictions of each calendar hour"""
    buckets: Dict[str, List[PredictiveSchedule]] = defaultdict(list)
    for prediction in predictions:
        buckets[hour_bucket(prediction.predicted_execution_time)].append(prediction)

    limited: List[PredictiveSchedule] = []
    for bucket in buckets.values():
        bucket.sort(key=lambda p: p.confidence_score, reverse=True)
        limited.extend(bucket[:max_per_hour])

    limited.sort(key=lambda p: (p.predicted_execution_time, -p.confidence_score))
    return limited


def average_durations(history: pd.DataFrame) -> Dict[str, float]:
    """Average completed-task duration in whole minutes (rounded up) per task type"""
    if history.empty:
        return {}
    completed = history.dropna(subset=["started_at", "finished_at"])
    if completed.empty:
        return {}
    minutes = (
        pd.to_datetime(completed["finished_at"]) - pd.to_datetime(completed["started_at"])
    ).dt.total_seconds() / 60
    averages = minutes.groupby(completed["type"]).mean()
    return {task_type: float(np.ceil(value)) for task_type, value in averages.items() if value > 0}


class PredictiveSchedulingEngine:
    """Projects future task occurrences from patterns, rules and user behavior"""

    def __init__(self, store: SchedulerStore, settings: Optional[Settings] = None,
                 inference: Optional[InferenceBackend] = None,
                 materializer: Optional[TaskMaterializer] = None):
        self.store = store
        self.settings = settings or get_settings()
        self.inference = inference or NullInferenceBackend()
        self.materializer = materializer or StoreTaskMaterializer(store)

    def time_slots(self, start: datetime, horizon_hours: int) -> List[datetime]:
        step = timedelta(minutes=self.settings.prediction_slot_minutes)
        end = start + timedelta(hours=horizon_hours)
        slots = []
        slot = start
        while slot < end:
            slots.append(slot)
            slot += step
        return slots

    async def generate_predictions(self, horizon_hours: int = 24, backend: str = "auto",
                                   now: Optional[datetime] = None) -> List[PredictiveSchedule]:
        if not self.settings.predictive_scheduling_enabled:
            logger.info("Predictive scheduling is disabled")
            return []

        with track_duration("predictive_scheduling"):
            now = to_naive_utc(now) or utcnow()
            now = now.replace(second=0, microsecond=0)
            threshold = self.settings.prediction_confidence_threshold

            patterns = await self.store.get_active_patterns(min_confidence=threshold)
            rules = await self.store.list_rules(enabled=True, min_confidence=threshold)
            behavior = await self.store.get_behavior_profile("default")
            history = await self.store.task_history_frame(now - timedelta(days=self.settings.history_window_days))
            durations = average_durations(history)

            slots = self.time_slots(now, horizon_hours)
            semaphore = asyncio.Semaphore(self.settings.max_concurrent_predictions)

            async def evaluate(slot: datetime) -> List[PredictiveSchedule]:
                async with semaphore:
                    return await self._predict_slot(slot, now, patterns, rules, behavior, durations, backend)

            slot_results = await asyncio.gather(*(evaluate(slot) for slot in slots))
            candidates = [prediction for result in slot_results for prediction in result]

            limited = limit_per_hour(candidates, self.settings.max_predictions_per_hour)
            stored = await self._persist(limited)

            logger.info(
                f"Predictive scheduling completed: {len(candidates)} candidates over {len(slots)} slots, "
                f"{len(stored)} stored, {sum(1 for p in stored if p.is_scheduled)} scheduled"
            )
            return stored

    async def _predict_slot(self, slot: datetime, now: datetime, patterns: List[ActivityPattern],
                            rules: List[SchedulingRule], behavior: Optional[UserBehaviorProfile],
                            durations: Dict[str, float], backend: str) -> List[PredictiveSchedule]:
        try:
            candidates: List[PredictiveSchedule] = []
            for pattern in patterns:
                prediction = self._predict_from_pattern(pattern, slot, now, durations)
                if prediction:
                    candidates.append(prediction)
            for rule in rules:
                prediction = self._predict_from_rule(rule, slot, durations)
                if prediction:
                    candidates.append(prediction)
            if behavior:
                candidates.extend(self._predict_from_behavior(behavior, slot, durations))
        except Exception as e:
            logger.error(f"Failed to evaluate slot {slot.isoformat()}: {e}")
            ITEM_FAILURES.labels(component="predictive_scheduling").inc()
            return []

        if candidates and self.inference.is_available(backend):
            context = {
                "slot": slot.isoformat(),
                "hour": slot.hour,
                "day_of_week": day_of_week(slot),
            }
            try:
                candidates = await asyncio.wait_for(
                    self.inference.enhance(candidates, context, backend=backend),
                    timeout=self.settings.inference_timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.warning(f"Inference enhancement timed out for slot {slot.isoformat()}")
            except Exception as e:
                logger.warning(f"Inference enhancement failed for slot {slot.isoformat()}: {e}")

        threshold = self.settings.prediction_confidence_threshold
        return [c for c in candidates if c.confidence_score >= threshold]

    def _requirements(self, task_type: str, durations: Dict[str, float]):
        return build_requirements(
            task_type,
            durations.get(task_type),
            default_duration=self.settings.default_task_duration_minutes
        )

    def _predict_from_pattern(self, pattern: ActivityPattern, slot: datetime, now: datetime,
                              durations: Dict[str, float]) -> Optional[PredictiveSchedule]:
        hour, dow, dom = slot.hour, day_of_week(slot), slot.day
        if not any(window.contains(hour, dow, dom) for window in pattern.pattern_data.time_windows):
            return None

        frequency_boost = min(0.10, pattern.detection_count / 100)
        confidence = min(
            MAX_PREDICTION_CONFIDENCE,
            pattern.confidence_score + recency_boost(pattern.last_detected_at, now) + frequency_boost
        )
        if confidence < self.settings.prediction_confidence_threshold:
            return None

        task_types = pattern.pattern_data.task_types
        task_type = task_types[0] if task_types else UNKNOWN_TASK_TYPE
        return PredictiveSchedule(
            pattern_id=pattern.id,
            source=PredictionSource.PATTERN,
            predicted_task_type=task_type,
            predicted_execution_time=slot,
            confidence_score=confidence,
            resource_requirements=self._requirements(task_type, durations),
        )

    def _predict_from_rule(self, rule: SchedulingRule, slot: datetime,
                           durations: Dict[str, float]) -> Optional[PredictiveSchedule]:
        fire_time = next_fire_in(
            rule.cron_expression, slot, slot + timedelta(minutes=self.settings.prediction_slot_minutes)
        )
        if fire_time is None:
            return None

        confidence = min(MAX_PREDICTION_CONFIDENCE, rule.confidence_score * rule.success_rate)
        if confidence < self.settings.prediction_confidence_threshold:
            return None

        task_type = task_type_for_rule(rule)
        return PredictiveSchedule(
            rule_id=rule.id,
            pattern_id=rule.pattern_id,
            source=PredictionSource.RULE,
            predicted_task_type=task_type,
            predicted_execution_time=fire_time,
            confidence_score=confidence,
            resource_requirements=self._requirements(task_type, durations),
        )

    def _predict_from_behavior(self, behavior: UserBehaviorProfile, slot: datetime,
                               durations: Dict[str, float]) -> List[PredictiveSchedule]:
        predictions = []
        hour, dow = slot.hour, day_of_week(slot)

        for activity in behavior.activity_patterns:
            combined = (activity.time_distribution.get(hour, 0.0) + activity.day_distribution.get(dow, 0.0)) / 2
            if combined <= BEHAVIOR_PROBABILITY_THRESHOLD:
                continue

            for correlation in activity.correlation_with_tasks:
                if (correlation.correlation_strength <= CORRELATION_STRENGTH_THRESHOLD
                        or correlation.success_rate <= CORRELATION_SUCCESS_THRESHOLD):
                    continue
                confidence = min(1.0, combined * correlation.correlation_strength)
                if confidence < self.settings.prediction_confidence_threshold:
                    continue
                predictions.append(PredictiveSchedule(
                    source=PredictionSource.BEHAVIOR,
                    predicted_task_type=correlation.task_type,
                    predicted_execution_time=slot,
                    confidence_score=confidence,
                    resource_requirements=self._requirements(correlation.task_type, durations),
                ))

        return predictions

    async def _persist(self, predictions: List[PredictiveSchedule]) -> List[PredictiveSchedule]:
        stored: List[PredictiveSchedule] = []
        for prediction in predictions:
            try:
                saved = await self.store.upsert_prediction(prediction)
            except StoreUnavailableException:
                raise
            except Exception as e:
                logger.error(f"Failed to store {prediction.predicted_task_type} prediction: {e}")
                ITEM_FAILURES.labels(component="predictive_scheduling").inc()
                continue

            PREDICTIONS_MADE.labels(source=saved.source.value).inc()
            if (self.settings.resource_reservation_enabled and not saved.is_scheduled
                    and saved.confidence_score >= self.settings.auto_commit_confidence):
                saved = await self._commit(saved)
            stored.append(saved)
        return stored

    async def _commit(self, prediction: PredictiveSchedule) -> PredictiveSchedule:
        try:
            task_id = await self.materializer.commit(
                prediction.predicted_task_type,
                prediction.predicted_execution_time,
                prediction.resource_requirements
            )
            committed = await self.store.mark_prediction_scheduled(prediction.id, task_id)
        except StoreUnavailableException:
            raise
        except Exception as e:
            logger.error(f"Failed to schedule predictive task for prediction {prediction.id}: {e}")
            ITEM_FAILURES.labels(component="task_materialization").inc()
            return prediction

        PREDICTIONS_COMMITTED.inc()
        logger.info(
            f"Scheduled predictive {committed.predicted_task_type} task {task_id} "
            f"(confidence {committed.confidence_score:.2f})"
        )
        return committed

    # Prediction lifecycle

    async def list_predictions(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                               scheduled: Optional[bool] = None) -> List[PredictiveSchedule]:
        return await self.store.list_predictions(start=start, end=end, scheduled=scheduled)

    async def record_outcome(self, prediction_id: str, actual_execution_time: datetime) -> PredictiveSchedule:
        """Score a prediction against when the task really ran"""
        prediction = await self.store.get_prediction(prediction_id)
        if prediction is None:
            raise PredictionNotFoundException(prediction_id)

        actual = to_naive_utc(actual_execution_time)
        delta_minutes = abs((actual - prediction.predicted_execution_time).total_seconds()) / 60
        window_minutes = self.settings.prediction_validation_window_hours * 60
        accuracy = max(0.0, 1 - delta_minutes / window_minutes)

        return await self.store.record_prediction_outcome(prediction_id, actual, accuracy)

    async def expire_stale_predictions(self, now: Optional[datetime] = None) -> int:
        now = to_naive_utc(now) or utcnow()
        cutoff = now - timedelta(hours=self.settings.prediction_validation_window_hours)
        removed = await self.store.delete_unscheduled_predictions_before(cutoff)
        if removed:
            logger.info(f"Expired {removed} stale uncommitted predictions older than {cutoff.isoformat()}")
        return removed
