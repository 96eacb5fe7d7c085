# rule_scheduler/services/resource_optimizer.py
"""
Resource-aware rebalancing of the enabled rule set.

A run captures the enabled rules, the host's current utilization and an
hourly load forecast built from stored predictions. The selected strategy
retimes, staggers or disables rules on a working copy, the forecast is
recomputed with retimed rules' load moved to their new hour, and the
difference is scored. Only a sufficiently large gain is written back.
"""

from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple
import logging

import numpy as np
import pandas as pd

from rule_scheduler.core.config import Settings, get_settings
from rule_scheduler.core.exceptions import ConcurrentModificationException, FeatureDisabledException
from rule_scheduler.core.monitoring import OPTIMIZATION_RUNS, track_duration
from rule_scheduler.models.schemas import (
    ImprovementMetrics, LoadPrediction, OptimizationResult, OptimizationStatus,
    OptimizationType, ResourceMetrics, ResourceRequirements, ScheduleSnapshot, SchedulingRule
)
from rule_scheduler.services.conflict_resolver import ConflictResolver
from rule_scheduler.services.cron import fixed_time, with_time
from rule_scheduler.services.resource_monitor import ResourceSampler, StaticResourceSampler
from rule_scheduler.services.store import SchedulerStore
from rule_scheduler.services.task_profiles import is_resource_intensive
from rule_scheduler.utils.clock import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

TIME_SAVINGS_FACTOR = 0.10
HISTORY_WINDOW = timedelta(hours=24)


@dataclass
class LoadItem:
    """One stored prediction's contribution to the forecast"""
    slot: datetime
    requirements: ResourceRequirements
    confidence: float
    scheduled: bool
    rule_id: Optional[str] = None


@dataclass
class OptimizationPlan:
    """Working copy a strategy mutates"""
    rules: Dict[str, SchedulingRule]
    items: List[LoadItem]
    start: datetime
    end: datetime
    changed: Set[str] = field(default_factory=set)

    @property
    def active_rules(self) -> List[SchedulingRule]:
        return [rule for rule in self.rules.values() if rule.is_enabled]


def average_utilization(metrics: ResourceMetrics) -> float:
    return (metrics.cpu_usage + metrics.memory_usage + metrics.disk_io) / 3


def peak_load(forecast: List[LoadPrediction]) -> float:
    if not forecast:
        return 0.0
    return max(average_utilization(lp.predicted_resource_usage) for lp in forecast)


def relative_reduction(before: float, after: float) -> float:
    if before == 0:
        return 0.0
    return (before - after) / before


def _hour_start(value: datetime) -> datetime:
    return value.replace(minute=0, second=0, microsecond=0)


def _shift_to_hour(slot: datetime, hour: int, start: datetime, end: datetime) -> datetime:
    moved = slot.replace(hour=hour)
    while moved < start:
        moved += timedelta(days=1)
    while moved >= end:
        moved -= timedelta(days=1)
    return moved if moved >= start else slot


def _circular_distance(a: int, b: int) -> int:
    diff = abs(a - b) % 24
    return min(diff, 24 - diff)


# Maps every optimization type to the ResourceOptimizationEngine method that implements it
STRATEGY_HANDLERS: Dict[OptimizationType, str] = {
    OptimizationType.LOAD_BALANCING: "_apply_load_balancing",
    OptimizationType.PEAK_MITIGATION: "_apply_peak_mitigation",
    OptimizationType.RESOURCE_OPTIMIZATION: "_apply_resource_optimization",
    OptimizationType.CONFLICT_RESOLUTION: "_apply_conflict_resolution",
    OptimizationType.EFFICIENCY_IMPROVEMENT: "_apply_efficiency_improvement",
}

if set(STRATEGY_HANDLERS) != set(OptimizationType):
    raise RuntimeError(f"STRATEGY_HANDLERS is missing optimization types: {set(OptimizationType) - set(STRATEGY_HANDLERS)}")


class ResourceOptimizationEngine:
    def __init__(self, store: SchedulerStore, settings: Optional[Settings] = None,
                 sampler: Optional[ResourceSampler] = None,
                 resolver: Optional[ConflictResolver] = None):
        self.store = store
        self.settings = settings or get_settings()
        self.sampler = sampler or StaticResourceSampler()
        self.resolver = resolver or ConflictResolver(self.settings.conflict_resolution_strategy)

        for handler in STRATEGY_HANDLERS.values():
            if not callable(getattr(self, handler, None)):
                raise RuntimeError(f"Optimization handler {handler} is not implemented")

    async def optimize_schedule(self, target_date: Optional[datetime] = None,
                                optimization_type: OptimizationType = OptimizationType.LOAD_BALANCING,
                                backend: str = "auto") -> OptimizationResult:
        """Run one optimization pass and record its outcome"""
        if not self.settings.auto_optimization_enabled:
            raise FeatureDisabledException("auto_optimization_enabled")

        optimization_type = OptimizationType(optimization_type)
        target = to_naive_utc(target_date) or utcnow()
        logger.info(f"Starting {optimization_type.value} optimization for {target.isoformat()} (backend={backend})")

        with track_duration("resource_optimization"):
            max_attempts = self.settings.max_commit_retries
            for attempt in range(1, max_attempts + 1):
                result, plan = await self._run_once(target, optimization_type)
                if result.improvement_metrics.efficiency_gain <= self.settings.optimization_commit_threshold:
                    result.status = OptimizationStatus.RECORDED_ONLY
                    break

                changed_rules = [plan.rules[rule_id] for rule_id in sorted(plan.changed)]
                try:
                    await self.store.save_rule_batch([], changed_rules, known_enabled_ids=plan.rules.keys())
                except ConcurrentModificationException as e:
                    logger.warning(f"Rules changed during optimization (attempt {attempt}/{max_attempts}): {e}")
                    if attempt == max_attempts:
                        result.status = OptimizationStatus.RECORDED_ONLY
                        result.error_message = f"Commit abandoned after {attempt} attempts: {e.message}"
                    continue

                result.status = OptimizationStatus.COMMITTED
                result.applied_at = utcnow()
                break

            stored = await self.store.add_optimization_result(result)

        OPTIMIZATION_RUNS.labels(optimization_type=optimization_type.value, status=stored.status.value).inc()
        logger.info(
            f"Resource optimization completed: type={optimization_type.value} "
            f"gain={stored.improvement_metrics.efficiency_gain:.3f} status={stored.status.value} "
            f"changed_rules={len(stored.changed_rule_ids)}"
        )
        return stored

    async def _run_once(self, target: datetime,
                        optimization_type: OptimizationType) -> Tuple[OptimizationResult, OptimizationPlan]:
        # captured
        rules = await self.store.list_rules(enabled=True)
        history_metrics = await self.analyze_history(target)
        utilization = self._sample_utilization(fallback=history_metrics)
        utilization.concurrent_tasks = history_metrics.concurrent_tasks

        # forecasted
        start = _hour_start(target)
        end = start + timedelta(hours=self.settings.optimization_horizon_hours)
        items = await self._load_items(start, end)
        original = ScheduleSnapshot(
            timestamp=target,
            active_rules=rules,
            resource_utilization=utilization,
            predicted_load=self.build_forecast(items, start, end),
        )
        logger.debug(f"Forecasted {len(original.predicted_load)} hourly slots from {len(items)} predictions")

        # strategy_applied
        plan = OptimizationPlan(
            rules={rule.id: rule.model_copy(deep=True) for rule in rules},
            items=[replace(item) for item in items],
            start=start,
            end=end,
        )
        getattr(self, STRATEGY_HANDLERS[optimization_type])(plan)

        active_ids = {rule.id for rule in plan.active_rules}
        optimized_items = [item for item in plan.items if item.rule_id is None or item.rule_id in active_ids]
        optimized = ScheduleSnapshot(
            timestamp=target,
            active_rules=plan.active_rules,
            resource_utilization=utilization,
            predicted_load=self.build_forecast(optimized_items, start, end),
        )

        # measured
        metrics = self.calculate_improvements(original, optimized)
        result = OptimizationResult(
            optimization_type=optimization_type,
            original_schedule=original,
            optimized_schedule=optimized,
            improvement_metrics=metrics,
            success=metrics.efficiency_gain > 0,
            status=OptimizationStatus.MEASURED,
            changed_rule_ids=sorted(plan.changed),
        )
        return result, plan

    def _sample_utilization(self, fallback: ResourceMetrics) -> ResourceMetrics:
        try:
            return self.sampler.sample()
        except Exception as e:
            logger.warning(f"Resource sampler unavailable, using task-history estimates: {e}")
            return fallback.model_copy()

    async def analyze_history(self, target: datetime) -> ResourceMetrics:
        """Proxy utilization figures for the trailing 24 hours of the task feed"""
        history = await self.store.task_history_frame(target - HISTORY_WINDOW)
        if not history.empty:
            history = history[pd.to_datetime(history["created_at"]) <= target]

        total_tasks = len(history)
        running = int((history["status"] == "running").sum()) if total_tasks else 0
        avg_duration = 0.0
        if total_tasks:
            completed = history.dropna(subset=["started_at", "finished_at"])
            if len(completed):
                durations = (
                    pd.to_datetime(completed["finished_at"]) - pd.to_datetime(completed["started_at"])
                ).dt.total_seconds() / 60
                avg_duration = float(durations.mean())

        return ResourceMetrics(
            cpu_usage=min(80.0, total_tasks * 5.0),
            memory_usage=min(85.0, running * 15.0),
            disk_io=min(70.0, avg_duration * 2),
            network_io=10.0 if total_tasks else 0.0,
            concurrent_tasks=float(running),
        )

    async def _load_items(self, start: datetime, end: datetime) -> List[LoadItem]:
        predictions = await self.store.list_predictions(start=start, end=end)
        return [
            LoadItem(
                slot=prediction.predicted_execution_time,
                requirements=prediction.resource_requirements or ResourceRequirements(
                    estimated_duration=self.settings.default_task_duration_minutes
                ),
                confidence=prediction.confidence_score,
                scheduled=prediction.is_scheduled,
                rule_id=prediction.rule_id,
            )
            for prediction in predictions
        ]

    def build_forecast(self, items: List[LoadItem], start: datetime, end: datetime) -> List[LoadPrediction]:
        """Hourly load: summed requirements as a percentage of configured capacity"""
        grouped: Dict[datetime, List[LoadItem]] = defaultdict(list)
        for item in items:
            bucket = _hour_start(item.slot)
            if start <= bucket < end:
                grouped[bucket].append(item)

        forecast = []
        bucket = start
        while bucket < end:
            bucket_items = grouped.get(bucket, [])
            forecast.append(LoadPrediction(
                time_slot=bucket,
                predicted_tasks=len(bucket_items),
                predicted_resource_usage=self._usage(bucket_items),
                confidence=self._forecast_confidence(bucket_items),
                contributing_rule_ids=sorted({item.rule_id for item in bucket_items if item.rule_id}),
            ))
            bucket += timedelta(hours=1)
        return forecast

    def _usage(self, items: List[LoadItem]) -> ResourceMetrics:
        if not items:
            return ResourceMetrics()
        totals = np.array([
            [item.requirements.cpu_usage, item.requirements.memory_usage,
             item.requirements.disk_usage, item.requirements.network_usage]
            for item in items
        ]).sum(axis=0)
        capacities = np.array([
            self.settings.cpu_capacity_percent, self.settings.memory_capacity_mb,
            self.settings.disk_capacity_mb, self.settings.network_capacity_mbps
        ])
        cpu, memory, disk, network = (totals / capacities * 100).tolist()
        return ResourceMetrics(
            cpu_usage=cpu,
            memory_usage=memory,
            disk_io=disk,
            network_io=network,
            concurrent_tasks=float(len(items)),
        )

    @staticmethod
    def _forecast_confidence(items: List[LoadItem]) -> float:
        predictive = [item.confidence for item in items if not item.scheduled]
        if not predictive:
            return 1.0
        scheduled_ratio = (len(items) - len(predictive)) / len(items)
        return float(scheduled_ratio + (1 - scheduled_ratio) * np.mean(predictive))

    def calculate_improvements(self, original: ScheduleSnapshot,
                               optimized: ScheduleSnapshot) -> ImprovementMetrics:
        utilization_improvement = relative_reduction(
            average_utilization(original.resource_utilization),
            average_utilization(optimized.resource_utilization)
        )
        peak_reduction = relative_reduction(peak_load(original.predicted_load), peak_load(optimized.predicted_load))
        conflict_reduction = relative_reduction(
            self.resolver.count_duplicate_crons(original.active_rules),
            self.resolver.count_duplicate_crons(optimized.active_rules)
        )
        predicted_tasks = sum(lp.predicted_tasks for lp in original.predicted_load)

        return ImprovementMetrics(
            resource_utilization_improvement=utilization_improvement,
            peak_load_reduction=peak_reduction,
            conflict_reduction=conflict_reduction,
            efficiency_gain=(utilization_improvement + peak_reduction + conflict_reduction) / 3,
            estimated_time_savings=predicted_tasks * self.settings.default_task_duration_minutes * TIME_SAVINGS_FACTOR,
        )

    # Strategy helpers

    def _forecast(self, plan: OptimizationPlan) -> List[LoadPrediction]:
        return self.build_forecast(plan.items, plan.start, plan.end)

    @staticmethod
    def _hourly_peaks(forecast: List[LoadPrediction]) -> Dict[int, ResourceMetrics]:
        """Worst CPU and memory per hour of day across the horizon"""
        peaks: Dict[int, ResourceMetrics] = {}
        for lp in forecast:
            usage = lp.predicted_resource_usage
            current = peaks.get(lp.time_slot.hour)
            if current is None:
                peaks[lp.time_slot.hour] = usage.model_copy()
            else:
                current.cpu_usage = max(current.cpu_usage, usage.cpu_usage)
                current.memory_usage = max(current.memory_usage, usage.memory_usage)
        return peaks

    def _rule_contribution(self, plan: OptimizationPlan, rule_id: str) -> Tuple[float, float]:
        """Largest per-hour (cpu%, memory%) the rule adds anywhere in the horizon"""
        per_bucket: Dict[datetime, List[float]] = defaultdict(lambda: [0.0, 0.0])
        for item in plan.items:
            if item.rule_id == rule_id:
                totals = per_bucket[_hour_start(item.slot)]
                totals[0] += item.requirements.cpu_usage
                totals[1] += item.requirements.memory_usage
        if not per_bucket:
            return 0.0, 0.0
        cpu = max(values[0] for values in per_bucket.values()) / self.settings.cpu_capacity_percent * 100
        memory = max(values[1] for values in per_bucket.values()) / self.settings.memory_capacity_mb * 100
        return cpu, memory

    def _contributors(self, plan: OptimizationPlan, lp: LoadPrediction) -> List[SchedulingRule]:
        """Retimable enabled rules in a slot, heaviest CPU first"""
        candidates = [
            plan.rules[rule_id] for rule_id in lp.contributing_rule_ids
            if rule_id in plan.rules and plan.rules[rule_id].is_enabled
            and fixed_time(plan.rules[rule_id].cron_expression) is not None
        ]
        return sorted(candidates, key=lambda rule: (-self._rule_contribution(plan, rule.id)[0], rule.id))

    def _move_rule(self, plan: OptimizationPlan, rule: SchedulingRule, hour: int):
        old_cron = rule.cron_expression
        rule.cron_expression = with_time(old_cron, hour=hour)
        for item in plan.items:
            if item.rule_id == rule.id:
                item.slot = _shift_to_hour(item.slot, hour, plan.start, plan.end)
        plan.changed.add(rule.id)
        logger.info(f"Retimed rule {rule.id} from '{old_cron}' to '{rule.cron_expression}'")

    # Strategies

    def _apply_load_balancing(self, plan: OptimizationPlan):
        threshold = self.settings.load_balancing_threshold * 100
        overloaded = sorted(
            (lp for lp in self._forecast(plan) if lp.predicted_resource_usage.cpu_usage > threshold),
            key=lambda lp: -lp.predicted_resource_usage.cpu_usage
        )

        for slot in overloaded:
            for rule in self._contributors(plan, slot):
                current = self._slot_cpu(plan, slot.time_slot)
                if current <= threshold:
                    break
                current_hour = fixed_time(rule.cron_expression)[1]
                cpu, _ = self._rule_contribution(plan, rule.id)
                peaks = self._hourly_peaks(self._forecast(plan))
                options = [
                    (usage.cpu_usage, hour) for hour, usage in peaks.items()
                    if hour != current_hour and usage.cpu_usage + cpu <= threshold
                ]
                if options:
                    self._move_rule(plan, rule, min(options)[1])

    def _apply_peak_mitigation(self, plan: OptimizationPlan):
        threshold = self.settings.peak_mitigation_threshold * 100
        peaks_in_horizon = [
            lp for lp in self._forecast(plan)
            if lp.predicted_resource_usage.cpu_usage > threshold
            or lp.predicted_resource_usage.memory_usage > threshold
        ]

        for slot in peaks_in_horizon:
            for rule in self._contributors(plan, slot):
                usage = self._slot_usage(plan, slot.time_slot)
                if usage.cpu_usage <= threshold and usage.memory_usage <= threshold:
                    break
                current_hour = fixed_time(rule.cron_expression)[1]
                cpu, memory = self._rule_contribution(plan, rule.id)
                hourly = self._hourly_peaks(self._forecast(plan))
                options = [
                    (_circular_distance(hour, current_hour), hour) for hour, load in hourly.items()
                    if hour != current_hour
                    and load.cpu_usage + cpu <= threshold
                    and load.memory_usage + memory <= threshold
                ]
                if options:
                    self._move_rule(plan, rule, min(options)[1])

    def _apply_resource_optimization(self, plan: OptimizationPlan):
        target = self.settings.resource_efficiency_target * 100
        intensive = sorted(
            (rule for rule in plan.active_rules
             if is_resource_intensive(rule) and fixed_time(rule.cron_expression) is not None),
            key=lambda rule: (-self._rule_contribution(plan, rule.id)[0], rule.id)
        )

        for rule in intensive:
            current_hour = fixed_time(rule.cron_expression)[1]
            hourly = self._hourly_peaks(self._forecast(plan))
            if current_hour not in hourly or hourly[current_hour].cpu_usage <= target:
                continue
            cpu, _ = self._rule_contribution(plan, rule.id)
            options = [
                (load.cpu_usage, hour) for hour, load in hourly.items()
                if hour != current_hour and load.cpu_usage + cpu < hourly[current_hour].cpu_usage
            ]
            if options:
                self._move_rule(plan, rule, min(options)[1])

    def _apply_conflict_resolution(self, plan: OptimizationPlan):
        active = plan.active_rules
        conflicts = self.resolver.detect(active)
        if not conflicts:
            return
        resolution = self.resolver.resolve(active, conflicts)
        for rule in resolution.rules:
            if rule.id in resolution.changed_rule_ids:
                plan.rules[rule.id] = rule
                plan.changed.add(rule.id)
        logger.info(f"Conflict resolution changed {len(resolution.changed_rule_ids)} rules")

    def _apply_efficiency_improvement(self, plan: OptimizationPlan):
        groups: Dict[str, List[SchedulingRule]] = defaultdict(list)
        for rule in plan.active_rules:
            if fixed_time(rule.cron_expression) is not None:
                groups[rule.cron_expression].append(rule)

        used = {rule.cron_expression for rule in plan.active_rules}
        for cron_expression, rules in groups.items():
            if len(rules) < 2:
                continue
            minute, _ = fixed_time(cron_expression)
            offset = 0
            for rule in sorted(rules, key=lambda r: (r.priority, -r.confidence_score, r.id))[1:]:
                while True:
                    offset += self.settings.stagger_minutes
                    candidate_minute = minute + offset
                    if candidate_minute > 59:
                        break
                    candidate = with_time(cron_expression, minute=candidate_minute)
                    if candidate not in used:
                        break
                if candidate_minute > 59:
                    logger.info(f"No free minute left to stagger rule {rule.id} at '{cron_expression}'")
                    break
                rule.cron_expression = candidate
                used.add(candidate)
                plan.changed.add(rule.id)
                logger.info(f"Staggered rule {rule.id} to '{candidate}'")

    def _slot_usage(self, plan: OptimizationPlan, time_slot: datetime) -> ResourceMetrics:
        bucket_items = [item for item in plan.items if _hour_start(item.slot) == time_slot]
        return self._usage(bucket_items)

    def _slot_cpu(self, plan: OptimizationPlan, time_slot: datetime) -> float:
        return self._slot_usage(plan, time_slot).cpu_usage

    # History

    async def list_optimization_results(self, limit: int = 20) -> List[OptimizationResult]:
        return await self.store.list_optimization_results(limit)

    async def get_optimization_result(self, result_id: str) -> Optional[OptimizationResult]:
        return await self.store.get_optimization_result(result_id)
