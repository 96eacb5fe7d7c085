# rule_scheduler/services/store.py
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Set, Tuple
import logging

import pandas as pd
from sqlalchemy import delete, select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from rule_scheduler.core.exceptions import (
    ConcurrentModificationException, PredictionNotFoundException,
    RuleNotFoundException, StoreUnavailableException
)
from rule_scheduler.models.database import (
    ActivityPatternRecord, OptimizationResultRecord, PredictiveScheduleRecord,
    SchedulingRuleRecord, TaskRecord, UserBehaviorProfileRecord
)
from rule_scheduler.models.schemas import (
    ActivityPattern, OptimizationResult, PredictiveSchedule, SchedulingRule,
    UserBehaviorProfile
)
from rule_scheduler.utils.clock import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

TASK_HISTORY_COLUMNS = ["type", "status", "created_at", "started_at", "finished_at"]
RULE_MUTABLE_FIELDS = (
    "rule_name", "description", "task_type", "cron_expression", "priority",
    "is_enabled", "confidence_score", "success_rate", "trigger_count",
    "last_triggered_at", "llm_model_used"
)


def _rule_record(rule: SchedulingRule) -> SchedulingRuleRecord:
    return SchedulingRuleRecord(**rule.model_dump(exclude={"version", "created_at", "updated_at"}))


def _apply_rule_fields(record: SchedulingRuleRecord, fields: Dict[str, Any]):
    for name, value in fields.items():
        if name in RULE_MUTABLE_FIELDS:
            setattr(record, name, value)


def _prediction_record(prediction: PredictiveSchedule) -> PredictiveScheduleRecord:
    return PredictiveScheduleRecord(
        id=prediction.id,
        rule_id=prediction.rule_id,
        pattern_id=prediction.pattern_id,
        source=prediction.source.value,
        predicted_task_type=prediction.predicted_task_type,
        predicted_execution_time=to_naive_utc(prediction.predicted_execution_time),
        confidence_score=prediction.confidence_score,
        resource_requirements=(
            prediction.resource_requirements.model_dump(mode="json")
            if prediction.resource_requirements else None
        ),
        is_scheduled=prediction.is_scheduled,
        task_id=prediction.task_id,
    )


def _matches(column, value):
    return column.is_(None) if value is None else column == value


class SchedulerStore:
    """Async repository over the scheduler tables.

    Converts between ORM rows and the pydantic domain types so JSON columns
    never leak past this boundary.
    """

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_maker() as session:
                yield session
        except (OperationalError, InterfaceError) as e:
            logger.error(f"Rule store operation failed: {e}")
            raise StoreUnavailableException(str(e.orig)) from e

    # Patterns

    async def get_active_patterns(self, min_confidence: float = 0.0,
                                  pattern_ids: Optional[Sequence[str]] = None) -> List[ActivityPattern]:
        stmt = (
            select(ActivityPatternRecord)
            .where(ActivityPatternRecord.is_active.is_(True))
            .where(ActivityPatternRecord.confidence_score >= min_confidence)
            .order_by(ActivityPatternRecord.confidence_score.desc())
        )
        if pattern_ids:
            stmt = stmt.where(ActivityPatternRecord.id.in_(list(pattern_ids)))

        async with self.session() as session:
            records = (await session.execute(stmt)).scalars().all()

        patterns = []
        for record in records:
            try:
                patterns.append(ActivityPattern.model_validate(record))
            except ValueError as e:
                logger.warning(f"Skipping malformed activity pattern {record.id}: {e}")
        return patterns

    async def save_pattern(self, pattern: ActivityPattern) -> ActivityPattern:
        async with self.session() as session:
            async with session.begin():
                await session.merge(ActivityPatternRecord(
                    id=pattern.id,
                    pattern_type=pattern.pattern_type.value,
                    pattern_data=pattern.pattern_data.model_dump(mode="json", exclude_none=True),
                    confidence_score=pattern.confidence_score,
                    detection_count=pattern.detection_count,
                    is_active=pattern.is_active,
                    first_detected_at=to_naive_utc(pattern.first_detected_at),
                    last_detected_at=to_naive_utc(pattern.last_detected_at),
                ))
        return pattern

    # Rules

    async def list_rules(self, enabled: Optional[bool] = None, pattern_id: Optional[str] = None,
                         min_confidence: Optional[float] = None) -> List[SchedulingRule]:
        stmt = select(SchedulingRuleRecord).order_by(
            SchedulingRuleRecord.priority.asc(),
            SchedulingRuleRecord.confidence_score.desc()
        )
        if enabled is not None:
            stmt = stmt.where(SchedulingRuleRecord.is_enabled.is_(enabled))
        if pattern_id is not None:
            stmt = stmt.where(SchedulingRuleRecord.pattern_id == pattern_id)
        if min_confidence is not None:
            stmt = stmt.where(SchedulingRuleRecord.confidence_score >= min_confidence)

        async with self.session() as session:
            records = (await session.execute(stmt)).scalars().all()
        return [SchedulingRule.model_validate(record) for record in records]

    async def get_rule(self, rule_id: str) -> Optional[SchedulingRule]:
        async with self.session() as session:
            record = await session.get(SchedulingRuleRecord, rule_id)
        return SchedulingRule.model_validate(record) if record else None

    async def existing_rule_keys(self) -> Set[Tuple[Optional[str], str]]:
        """(pattern_id, cron_expression) pairs already in the store"""
        stmt = select(SchedulingRuleRecord.pattern_id, SchedulingRuleRecord.cron_expression)
        async with self.session() as session:
            rows = (await session.execute(stmt)).all()
        return {(row[0], row[1]) for row in rows}

    async def _load_for_update(self, session: AsyncSession, rule: SchedulingRule) -> SchedulingRuleRecord:
        record = await session.get(SchedulingRuleRecord, rule.id)
        if record is None:
            raise RuleNotFoundException(rule.id)
        if rule.version is not None and record.version != rule.version:
            raise ConcurrentModificationException(rule.id, rule.version, record.version)
        return record

    async def _check_enabled_snapshot(self, session: AsyncSession, rules: List[SchedulingRule],
                                      known_enabled_ids: Set[str]):
        """Reject the batch if an enabled rule on one of its crons appeared after the snapshot"""
        crons = {rule.cron_expression for rule in rules if rule.is_enabled}
        if not crons:
            return
        ignored = known_enabled_ids | {rule.id for rule in rules}
        stmt = (
            select(SchedulingRuleRecord.id)
            .where(SchedulingRuleRecord.is_enabled.is_(True))
            .where(SchedulingRuleRecord.cron_expression.in_(crons))
        )
        for rule_id in (await session.execute(stmt)).scalars():
            if rule_id not in ignored:
                raise ConcurrentModificationException(rule_id)

    async def save_rule_batch(self, new_rules: Iterable[SchedulingRule],
                              changed_rules: Iterable[SchedulingRule] = (),
                              known_enabled_ids: Optional[Iterable[str]] = None) -> List[SchedulingRule]:
        """Insert new rules and update changed ones in a single transaction.

        Changed rules are checked against the version they were read at.
        When ``known_enabled_ids`` is given (the enabled set conflict
        detection ran against), an enabled rule outside it that shares a cron
        with the batch also fails the commit. Either way the whole batch
        rolls back with ``ConcurrentModificationException``.
        """
        new_rules = list(new_rules)
        changed_rules = list(changed_rules)
        new_records = [_rule_record(rule) for rule in new_rules]
        updated_records = []

        try:
            async with self.session() as session:
                async with session.begin():
                    if known_enabled_ids is not None:
                        await self._check_enabled_snapshot(
                            session, new_rules + changed_rules, set(known_enabled_ids)
                        )
                    for rule in changed_rules:
                        record = await self._load_for_update(session, rule)
                        _apply_rule_fields(record, rule.model_dump(include=set(RULE_MUTABLE_FIELDS)))
                        updated_records.append(record)
                    session.add_all(new_records)
        except StaleDataError as e:
            raise ConcurrentModificationException(", ".join(rule.id for rule in changed_rules)) from e

        return [SchedulingRule.model_validate(record) for record in new_records + updated_records]

    async def update_rule(self, rule_id: str, fields: Dict[str, Any],
                          expected_version: Optional[int] = None) -> SchedulingRule:
        try:
            async with self.session() as session:
                async with session.begin():
                    record = await session.get(SchedulingRuleRecord, rule_id)
                    if record is None:
                        raise RuleNotFoundException(rule_id)
                    if expected_version is not None and record.version != expected_version:
                        raise ConcurrentModificationException(rule_id, expected_version, record.version)
                    _apply_rule_fields(record, fields)
        except StaleDataError as e:
            raise ConcurrentModificationException(rule_id, expected_version) from e

        return SchedulingRule.model_validate(record)

    async def delete_rule(self, rule_id: str) -> bool:
        async with self.session() as session:
            async with session.begin():
                record = await session.get(SchedulingRuleRecord, rule_id)
                if record is None:
                    return False
                await session.delete(record)
        return True

    # Predictions

    async def add_prediction(self, prediction: PredictiveSchedule) -> PredictiveSchedule:
        record = _prediction_record(prediction)
        async with self.session() as session:
            async with session.begin():
                session.add(record)
        return PredictiveSchedule.model_validate(record)

    async def upsert_prediction(self, prediction: PredictiveSchedule) -> PredictiveSchedule:
        """Store a prediction unless the same occurrence is already known.

        An occurrence is keyed by source, rule, pattern, task type and time.
        A committed match is returned untouched; an uncommitted one takes the
        new confidence and requirements.
        """
        candidate = _prediction_record(prediction)
        stmt = select(PredictiveScheduleRecord).where(
            PredictiveScheduleRecord.source == candidate.source,
            _matches(PredictiveScheduleRecord.rule_id, candidate.rule_id),
            _matches(PredictiveScheduleRecord.pattern_id, candidate.pattern_id),
            PredictiveScheduleRecord.predicted_task_type == candidate.predicted_task_type,
            PredictiveScheduleRecord.predicted_execution_time == candidate.predicted_execution_time,
        ).order_by(PredictiveScheduleRecord.is_scheduled.desc())

        async with self.session() as session:
            async with session.begin():
                record = (await session.execute(stmt)).scalars().first()
                if record is None:
                    record = candidate
                    session.add(record)
                elif not record.is_scheduled:
                    record.confidence_score = candidate.confidence_score
                    record.resource_requirements = candidate.resource_requirements
        return PredictiveSchedule.model_validate(record)

    async def mark_prediction_scheduled(self, prediction_id: str, task_id: str) -> PredictiveSchedule:
        async with self.session() as session:
            async with session.begin():
                record = await session.get(PredictiveScheduleRecord, prediction_id)
                if record is None:
                    raise PredictionNotFoundException(prediction_id)
                record.is_scheduled = True
                record.task_id = task_id
        return PredictiveSchedule.model_validate(record)

    async def get_prediction(self, prediction_id: str) -> Optional[PredictiveSchedule]:
        async with self.session() as session:
            record = await session.get(PredictiveScheduleRecord, prediction_id)
        return PredictiveSchedule.model_validate(record) if record else None

    async def list_predictions(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                               scheduled: Optional[bool] = None) -> List[PredictiveSchedule]:
        stmt = select(PredictiveScheduleRecord).order_by(
            PredictiveScheduleRecord.predicted_execution_time.asc(),
            PredictiveScheduleRecord.confidence_score.desc()
        )
        if start is not None:
            stmt = stmt.where(PredictiveScheduleRecord.predicted_execution_time >= to_naive_utc(start))
        if end is not None:
            stmt = stmt.where(PredictiveScheduleRecord.predicted_execution_time < to_naive_utc(end))
        if scheduled is not None:
            stmt = stmt.where(PredictiveScheduleRecord.is_scheduled.is_(scheduled))

        async with self.session() as session:
            records = (await session.execute(stmt)).scalars().all()
        return [PredictiveSchedule.model_validate(record) for record in records]

    async def record_prediction_outcome(self, prediction_id: str, actual_execution_time: datetime,
                                        accuracy: float) -> PredictiveSchedule:
        async with self.session() as session:
            async with session.begin():
                record = await session.get(PredictiveScheduleRecord, prediction_id)
                if record is None:
                    raise PredictionNotFoundException(prediction_id)
                record.actual_execution_time = to_naive_utc(actual_execution_time)
                record.prediction_accuracy = accuracy
        return PredictiveSchedule.model_validate(record)

    async def delete_unscheduled_predictions_before(self, cutoff: datetime) -> int:
        stmt = (
            delete(PredictiveScheduleRecord)
            .where(PredictiveScheduleRecord.is_scheduled.is_(False))
            .where(PredictiveScheduleRecord.predicted_execution_time < to_naive_utc(cutoff))
        )
        async with self.session() as session:
            async with session.begin():
                result = await session.execute(stmt)
        return result.rowcount or 0

    # Optimization history

    async def add_optimization_result(self, result: OptimizationResult) -> OptimizationResult:
        record = OptimizationResultRecord(
            id=result.id,
            optimization_type=result.optimization_type.value,
            original_schedule=result.original_schedule.model_dump(mode="json"),
            optimized_schedule=result.optimized_schedule.model_dump(mode="json"),
            improvement_metrics=result.improvement_metrics.model_dump(mode="json"),
            success=result.success,
            applied_at=to_naive_utc(result.applied_at),
            status=result.status.value,
            error_message=result.error_message,
            changed_rule_ids=list(result.changed_rule_ids),
        )
        async with self.session() as session:
            async with session.begin():
                session.add(record)
        return OptimizationResult.model_validate(record)

    async def list_optimization_results(self, limit: int = 20) -> List[OptimizationResult]:
        stmt = (
            select(OptimizationResultRecord)
            .order_by(OptimizationResultRecord.created_at.desc())
            .limit(limit)
        )
        async with self.session() as session:
            records = (await session.execute(stmt)).scalars().all()
        return [OptimizationResult.model_validate(record) for record in records]

    async def get_optimization_result(self, result_id: str) -> Optional[OptimizationResult]:
        async with self.session() as session:
            record = await session.get(OptimizationResultRecord, result_id)
        return OptimizationResult.model_validate(record) if record else None

    # Behavior profile

    async def get_behavior_profile(self, user_id: str = "default") -> Optional[UserBehaviorProfile]:
        async with self.session() as session:
            record = await session.get(UserBehaviorProfileRecord, user_id)
        if record is None:
            return None
        try:
            return UserBehaviorProfile.model_validate(record)
        except ValueError as e:
            logger.warning(f"Ignoring malformed behavior profile '{user_id}': {e}")
            return None

    async def save_behavior_profile(self, profile: UserBehaviorProfile) -> UserBehaviorProfile:
        async with self.session() as session:
            async with session.begin():
                await session.merge(UserBehaviorProfileRecord(
                    user_id=profile.user_id,
                    activity_patterns=[p.model_dump(mode="json") for p in profile.activity_patterns],
                    peak_hours=list(profile.peak_hours),
                    preferred_task_types=list(profile.preferred_task_types),
                    interaction_frequency=profile.interaction_frequency,
                    last_updated=to_naive_utc(profile.last_updated) or utcnow(),
                ))
        return profile

    # Task feed

    async def add_task(self, task_type: str, status: str = "pending", description: Optional[str] = None,
                       scheduled_for: Optional[datetime] = None, created_at: Optional[datetime] = None,
                       started_at: Optional[datetime] = None, finished_at: Optional[datetime] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> str:
        record = TaskRecord(
            type=task_type,
            status=status,
            description=description,
            scheduled_for=to_naive_utc(scheduled_for),
            created_at=to_naive_utc(created_at) or utcnow(),
            started_at=to_naive_utc(started_at),
            finished_at=to_naive_utc(finished_at),
            task_metadata=metadata,
        )
        async with self.session() as session:
            async with session.begin():
                session.add(record)
        return record.id

    async def task_history_frame(self, since: datetime, task_type: Optional[str] = None) -> pd.DataFrame:
        """Tasks created since ``since`` as a DataFrame (one row per task)"""
        stmt = select(
            TaskRecord.type, TaskRecord.status, TaskRecord.created_at,
            TaskRecord.started_at, TaskRecord.finished_at
        ).where(TaskRecord.created_at >= to_naive_utc(since))
        if task_type is not None:
            stmt = stmt.where(TaskRecord.type == task_type)

        async with self.session() as session:
            rows = (await session.execute(stmt)).all()
        return pd.DataFrame([tuple(row) for row in rows], columns=TASK_HISTORY_COLUMNS)
