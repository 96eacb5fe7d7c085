# rule_scheduler/services/rule_generation.py
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple
import logging

from rule_scheduler.core.config import Settings, get_settings
from rule_scheduler.core.exceptions import (
    ConcurrentModificationException, InvalidCronExpressionException, RuleNotFoundException
)
from rule_scheduler.core.monitoring import ITEM_FAILURES, RULE_CONFLICTS, RULES_GENERATED, track_duration
from rule_scheduler.models.schemas import (
    ActivityPattern, CronValidationResult, GenerationSummary, PatternType,
    RuleGenerationResponse, SchedulingRule
)
from rule_scheduler.services.conflict_resolver import ConflictResolver
from rule_scheduler.services.cron import validate_cron
from rule_scheduler.services.store import SchedulerStore
from rule_scheduler.services.task_profiles import extract_task_type

logger = logging.getLogger(__name__)

DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
CORRELATION_POLL_CRON = "*/15 * * * *"
# PATCH may set these to null explicitly
CLEARABLE_RULE_FIELDS = ("description", "task_type")


@dataclass
class RuleDraft:
    rule_name: str
    description: str
    cron_expression: str


def calculate_priority(confidence: float, frequency: float) -> int:
    """Deterministic 1-100 priority from pattern confidence and frequency; halves round up"""
    confidence_boost = (1 - confidence) * 50
    frequency_boost = min(frequency / 10, 30)
    return max(1, min(100, math.floor(100 - confidence_boost - frequency_boost + 0.5)))


def _task_label(pattern: ActivityPattern) -> str:
    task_types = pattern.pattern_data.task_types
    return task_types[0] if task_types else "Task"


def _task_list(pattern: ActivityPattern) -> str:
    task_types = pattern.pattern_data.task_types
    return ", ".join(task_types) if task_types else "tasks"


def _daily_drafts(pattern: ActivityPattern) -> List[RuleDraft]:
    return [
        RuleDraft(
            rule_name=f"Daily {_task_label(pattern)} at {window.start_hour}:00",
            description=f"Automatically schedule {_task_list(pattern)} daily at {window.start_hour}:00 based on detected pattern",
            cron_expression=f"0 {window.start_hour} * * *"
        )
        for window in pattern.pattern_data.time_windows
    ]


def _weekly_drafts(pattern: ActivityPattern) -> List[RuleDraft]:
    drafts = []
    for window in pattern.pattern_data.time_windows:
        if not window.days_of_week:
            continue
        day_names = ", ".join(DAY_NAMES[d] for d in window.days_of_week)
        drafts.append(RuleDraft(
            rule_name=f"Weekly {_task_label(pattern)} on {day_names}",
            description=f"Automatically schedule {_task_list(pattern)} on {day_names} at {window.start_hour}:00",
            cron_expression=f"0 {window.start_hour} * * {','.join(str(d) for d in window.days_of_week)}"
        ))
    return drafts


def _monthly_drafts(pattern: ActivityPattern) -> List[RuleDraft]:
    drafts = []
    for window in pattern.pattern_data.time_windows:
        for day in window.days_of_month or []:
            drafts.append(RuleDraft(
                rule_name=f"Monthly {_task_label(pattern)} on day {day}",
                description=f"Automatically schedule {_task_list(pattern)} on day {day} of each month at {window.start_hour}:00",
                cron_expression=f"0 {window.start_hour} {day} * *"
            ))
    return drafts


def _user_behavior_drafts(pattern: ActivityPattern) -> List[RuleDraft]:
    actions = pattern.pattern_data.user_actions or []
    action = actions[0] if actions else "Action"
    return [
        RuleDraft(
            rule_name=f"User Behavior: {action} at {window.start_hour}:00",
            description=f"Predictively schedule based on user behavior pattern: {', '.join(actions) if actions else 'actions'}",
            cron_expression=f"0 {window.start_hour} * * *"
        )
        for window in pattern.pattern_data.time_windows
    ]


def _correlation_drafts(pattern: ActivityPattern) -> List[RuleDraft]:
    task_types = pattern.pattern_data.task_types
    if len(task_types) < 2:
        return []
    return [RuleDraft(
        rule_name=f"Task Correlation: {' → '.join(task_types)}",
        description=f"Automatically schedule {task_types[1]} after {task_types[0]} based on correlation pattern",
        cron_expression=CORRELATION_POLL_CRON
    )]


# None marks pattern types that never produce rules
RULE_BUILDERS: Dict[PatternType, Optional[Callable[[ActivityPattern], List[RuleDraft]]]] = {
    PatternType.DAILY_RECURRING: _daily_drafts,
    PatternType.WEEKLY_RECURRING: _weekly_drafts,
    PatternType.MONTHLY_RECURRING: _monthly_drafts,
    PatternType.USER_BEHAVIOR: _user_behavior_drafts,
    PatternType.TASK_CORRELATION: _correlation_drafts,
    PatternType.RESOURCE_USAGE: None,
    PatternType.SEASONAL: None,
    PatternType.CUSTOM: None,
}

if set(RULE_BUILDERS) != set(PatternType):
    raise RuntimeError(f"RULE_BUILDERS is missing pattern types: {set(PatternType) - set(RULE_BUILDERS)}")


class RuleGenerationEngine:
    """Turns active activity patterns into conflict-free scheduling rules"""

    def __init__(self, store: SchedulerStore, settings: Optional[Settings] = None,
                 resolver: Optional[ConflictResolver] = None):
        self.store = store
        self.settings = settings or get_settings()
        self.resolver = resolver or ConflictResolver(self.settings.conflict_resolution_strategy)

    def should_auto_enable(self, confidence: float) -> bool:
        return self.settings.auto_generation_enabled and confidence >= self.settings.auto_enable_confidence

    def rules_for_pattern(self, pattern: ActivityPattern, backend: str = "ollama") -> List[SchedulingRule]:
        """Candidate rules for one pattern, capped at ``max_rules_per_pattern``"""
        builder = RULE_BUILDERS[pattern.pattern_type]
        if builder is None:
            logger.warning(f"No rule generator for pattern type '{pattern.pattern_type.value}' (pattern {pattern.id})")
            return []

        drafts = builder(pattern)[:self.settings.max_rules_per_pattern]
        task_types = pattern.pattern_data.task_types
        priority = calculate_priority(pattern.confidence_score, pattern.pattern_data.frequency)

        return [
            SchedulingRule(
                pattern_id=pattern.id,
                rule_name=draft.rule_name,
                description=draft.description,
                task_type=task_types[0] if task_types else extract_task_type(f"{draft.rule_name} {draft.description}"),
                cron_expression=draft.cron_expression,
                priority=priority,
                is_enabled=self.should_auto_enable(pattern.confidence_score),
                is_auto_generated=True,
                confidence_score=pattern.confidence_score,
                llm_model_used=backend,
            )
            for draft in drafts
        ]

    async def generate_rules(self, pattern_ids: Optional[Sequence[str]] = None,
                             backend: str = "ollama") -> RuleGenerationResponse:
        """Generate, de-conflict and persist rules for the active patterns"""
        with track_duration("rule_generation"):
            patterns = await self.store.get_active_patterns(
                min_confidence=self.settings.min_pattern_confidence,
                pattern_ids=pattern_ids
            )
            if not patterns:
                logger.info("No active patterns above the confidence threshold; nothing to generate")
                return RuleGenerationResponse()

            max_attempts = self.settings.max_commit_retries
            for attempt in range(1, max_attempts + 1):
                try:
                    return await self._generate_once(patterns, backend)
                except ConcurrentModificationException as e:
                    if attempt == max_attempts:
                        logger.error(f"Rule generation gave up after {attempt} concurrent-modification retries: {e}")
                        raise
                    logger.warning(f"Rule store changed during generation (attempt {attempt}/{max_attempts}), retrying: {e}")

    async def _generate_once(self, patterns: List[ActivityPattern], backend: str) -> RuleGenerationResponse:
        existing_keys = await self.store.existing_rule_keys()
        existing_enabled = await self.store.list_rules(enabled=True)

        candidates = self._collect_candidates(patterns, backend, existing_keys)

        conflicts = self.resolver.detect(candidates, existing=existing_enabled)
        resolution = self.resolver.resolve(list(existing_enabled) + candidates, conflicts)
        resolved = {rule.id: rule for rule in resolution.rules}
        changed = set(resolution.changed_rule_ids)

        new_rules = [resolved[rule.id] for rule in candidates]
        changed_existing = [resolved[rule.id] for rule in existing_enabled if rule.id in changed]
        if changed_existing:
            logger.info(f"Conflict resolution updates {len(changed_existing)} existing rules")

        stored = await self.store.save_rule_batch(
            new_rules, changed_existing, known_enabled_ids=[rule.id for rule in existing_enabled]
        )
        generated = stored[:len(new_rules)]

        for conflict in conflicts:
            RULE_CONFLICTS.labels(conflict_type=conflict.conflict_type.value).inc()
        for rule in generated:
            RULES_GENERATED.labels(enabled=str(rule.is_enabled).lower()).inc()

        auto_enabled = sum(1 for rule in generated if rule.is_enabled)
        summary = GenerationSummary(
            total_generated=len(generated),
            auto_enabled=auto_enabled,
            requires_review=len(generated) - auto_enabled,
            conflicts_detected=len(conflicts)
        )
        logger.info(
            f"Rule generation completed: {summary.total_generated} generated, "
            f"{summary.auto_enabled} enabled, {summary.conflicts_detected} conflicts"
        )
        return RuleGenerationResponse(
            generated_rules=generated,
            generation_summary=summary,
            conflicts=conflicts
        )

    def _collect_candidates(self, patterns: List[ActivityPattern], backend: str,
                            existing_keys: Set[Tuple[Optional[str], str]]) -> List[SchedulingRule]:
        seen = set(existing_keys)
        candidates: List[SchedulingRule] = []

        for pattern in patterns:
            try:
                rules = self.rules_for_pattern(pattern, backend)
            except Exception as e:
                logger.error(f"Failed to generate rules for pattern {pattern.id}: {e}")
                ITEM_FAILURES.labels(component="rule_generation").inc()
                continue

            for rule in rules:
                key = (rule.pattern_id, rule.cron_expression)
                if key in seen:
                    logger.debug(f"Rule for pattern {pattern.id} at '{rule.cron_expression}' already exists")
                    continue
                validation = validate_cron(rule.cron_expression, preview_count=0)
                if not validation.is_valid:
                    logger.warning(
                        f"Dropping rule '{rule.rule_name}' with invalid cron "
                        f"'{rule.cron_expression}': {validation.errors}"
                    )
                    ITEM_FAILURES.labels(component="rule_generation").inc()
                    continue
                seen.add(key)
                candidates.append(rule)

        return candidates

    # Rule management

    async def list_rules(self, enabled: Optional[bool] = None, pattern_id: Optional[str] = None,
                         min_confidence: Optional[float] = None) -> List[SchedulingRule]:
        return await self.store.list_rules(enabled=enabled, pattern_id=pattern_id, min_confidence=min_confidence)

    async def get_rule(self, rule_id: str) -> SchedulingRule:
        rule = await self.store.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundException(rule_id)
        return rule

    async def update_rule(self, rule_id: str, fields: Dict[str, Any]) -> SchedulingRule:
        """Apply a partial update; enabling a rule re-checks it against the enabled set"""
        current = await self.get_rule(rule_id)
        fields = {
            name: value for name, value in fields.items()
            if value is not None or name in CLEARABLE_RULE_FIELDS
        }

        if "cron_expression" in fields:
            validation = validate_cron(fields["cron_expression"], preview_count=0)
            if not validation.is_valid:
                raise InvalidCronExpressionException(fields["cron_expression"], validation.errors)
            fields["cron_expression"] = validation.cron_expression

        # Re-validate so score and priority ranges hold
        proposed = SchedulingRule.model_validate({**current.model_dump(), **fields})

        if proposed.is_enabled:
            others = [rule for rule in await self.store.list_rules(enabled=True) if rule.id != rule_id]
            conflicts = self.resolver.detect([proposed], existing=others)
            changed = [proposed]
            if conflicts:
                resolution = self.resolver.resolve(others + [proposed], conflicts)
                changed_ids = set(resolution.changed_rule_ids) | {rule_id}
                changed = [rule for rule in resolution.rules if rule.id in changed_ids]
                logger.info(f"Update of rule {rule_id} resolved {len(conflicts)} conflicts")
            stored = await self.store.save_rule_batch(
                [], changed, known_enabled_ids=[rule.id for rule in others]
            )
            return next(rule for rule in stored if rule.id == rule_id)

        return await self.store.update_rule(rule_id, fields, expected_version=current.version)

    async def enable_rule(self, rule_id: str) -> SchedulingRule:
        return await self.update_rule(rule_id, {"is_enabled": True})

    async def disable_rule(self, rule_id: str) -> SchedulingRule:
        return await self.update_rule(rule_id, {"is_enabled": False})

    async def delete_rule(self, rule_id: str):
        if not await self.store.delete_rule(rule_id):
            raise RuleNotFoundException(rule_id)
        logger.info(f"Deleted scheduling rule {rule_id}")

    @staticmethod
    def validate_cron(cron_expression: str) -> CronValidationResult:
        return validate_cron(cron_expression)
