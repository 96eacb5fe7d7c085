# rule_scheduler/services/conflict_resolver.py
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Sequence, Tuple
import logging

from rule_scheduler.core.config import CONFLICT_RESOLUTION_STRATEGIES
from rule_scheduler.core.exceptions import ConfigurationException
from rule_scheduler.models.schemas import ConflictType, RuleConflict, SchedulingRule, Severity

logger = logging.getLogger(__name__)

DISABLED_SUFFIX = " (Disabled due to conflict)"
TIME_OVERLAP_SUGGESTION = "Merge rules or adjust timing"
CONTENTION_SUGGESTION = "Adjust priorities or stagger execution"
CONTENTION_PRIORITY_GAP = 5


@dataclass
class ResolutionResult:
    rules: List[SchedulingRule]
    changed_rule_ids: List[str] = field(default_factory=list)


def _annotate(rule: SchedulingRule, note: str):
    description = rule.description or ""
    if note not in description:
        rule.description = f"{description}{note}"


class ConflictResolver:
    """Detects identical-cron conflicts and resolves them by stable rule id"""

    def __init__(self, strategy: str = "priority"):
        if strategy not in CONFLICT_RESOLUTION_STRATEGIES:
            raise ConfigurationException(
                "conflict_resolution_strategy",
                f"unknown strategy '{strategy}'"
            )
        self.strategy = strategy
        self._handlers: Dict[str, Callable[[SchedulingRule, SchedulingRule], None]] = {
            "priority": self._resolve_by_priority,
            "disable_lower": self._resolve_by_confidence,
            "merge": self._resolve_by_merge,
        }

    def detect(self, rules: Sequence[SchedulingRule],
               existing: Iterable[SchedulingRule] = ()) -> List[RuleConflict]:
        """Pairwise detection over the batch and over (existing enabled, batch) pairs"""
        batch_ids = {rule.id for rule in rules}
        pairs: List[Tuple[SchedulingRule, SchedulingRule]] = []

        for i in range(len(rules)):
            for j in range(i + 1, len(rules)):
                pairs.append((rules[i], rules[j]))

        for current in existing:
            if not current.is_enabled or current.id in batch_ids:
                continue
            for rule in rules:
                pairs.append((current, rule))

        conflicts: List[RuleConflict] = []
        for first, second in pairs:
            conflicts.extend(self._pair_conflicts(first, second))

        if conflicts:
            logger.info(f"Detected {len(conflicts)} rule conflicts across {len(pairs)} rule pairs")
        return conflicts

    def _pair_conflicts(self, first: SchedulingRule, second: SchedulingRule) -> List[RuleConflict]:
        if first.cron_expression != second.cron_expression:
            return []

        conflicts = [RuleConflict(
            rule_id_1=first.id,
            rule_id_2=second.id,
            conflict_type=ConflictType.TIME_OVERLAP,
            severity=Severity.MEDIUM,
            resolution_suggestion=TIME_OVERLAP_SUGGESTION
        )]

        if abs(first.priority - second.priority) <= CONTENTION_PRIORITY_GAP:
            conflicts.append(RuleConflict(
                rule_id_1=first.id,
                rule_id_2=second.id,
                conflict_type=ConflictType.RESOURCE_CONTENTION,
                severity=Severity.LOW,
                resolution_suggestion=CONTENTION_SUGGESTION
            ))

        return conflicts

    def resolve(self, rules: Sequence[SchedulingRule],
                conflicts: Sequence[RuleConflict]) -> ResolutionResult:
        """Apply the configured strategy to copies of ``rules``.

        ``rules`` must contain every rule referenced by ``conflicts`` (new and
        existing). A conflict whose rules are no longer both enabled is
        already settled and is skipped.
        """
        resolved = [rule.model_copy(deep=True) for rule in rules]
        by_id = {rule.id: rule for rule in resolved}
        original_state = {rule.id: (rule.is_enabled, rule.confidence_score, rule.description)
                          for rule in rules}
        handler = self._handlers[self.strategy]

        for conflict in conflicts:
            first = by_id.get(conflict.rule_id_1)
            second = by_id.get(conflict.rule_id_2)
            if first is None or second is None:
                logger.warning(
                    f"Conflict references unknown rule ({conflict.rule_id_1}, {conflict.rule_id_2})"
                )
                continue
            if not (first.is_enabled and second.is_enabled):
                continue
            handler(first, second)

        changed = [
            rule.id for rule in resolved
            if (rule.is_enabled, rule.confidence_score, rule.description) != original_state[rule.id]
        ]
        return ResolutionResult(rules=resolved, changed_rule_ids=changed)

    def _resolve_by_priority(self, first: SchedulingRule, second: SchedulingRule):
        loser = first if first.priority > second.priority else second
        loser.is_enabled = False
        _annotate(loser, DISABLED_SUFFIX)

    def _resolve_by_confidence(self, first: SchedulingRule, second: SchedulingRule):
        loser = first if first.confidence_score < second.confidence_score else second
        loser.is_enabled = False
        _annotate(loser, DISABLED_SUFFIX)

    def _resolve_by_merge(self, first: SchedulingRule, second: SchedulingRule):
        ranked = sorted(
            [first, second],
            key=lambda rule: (rule.priority, -rule.confidence_score)
        )
        winner, loser = ranked[0], ranked[1]

        winner.confidence_score = max(winner.confidence_score, loser.confidence_score)
        _annotate(winner, f" (merged with {loser.rule_name})")
        loser.is_enabled = False
        _annotate(loser, f" (merged into {winner.id})")

    @staticmethod
    def count_duplicate_crons(rules: Iterable[SchedulingRule]) -> int:
        """Number of enabled rules that repeat an already-used cron expression"""
        counts = Counter(rule.cron_expression for rule in rules if rule.is_enabled)
        return sum(count - 1 for count in counts.values())
