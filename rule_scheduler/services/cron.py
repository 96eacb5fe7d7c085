# rule_scheduler/services/cron.py
"""
Cron helpers shared by the engines.

Rules use standard five-field cron (minute hour day-of-month month
day-of-week, Sunday = 0). Evaluation is delegated to croniter; the helpers
here add validation messages and the minute/hour rewriting that
optimization uses to retime a rule.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from croniter import croniter

from rule_scheduler.models.schemas import CronValidationResult
from rule_scheduler.utils.clock import utcnow

CRON_FIELD_COUNT = 5


def split_fields(cron_expression: str) -> List[str]:
    return cron_expression.split()


def validate_cron(cron_expression: str, base_time: Optional[datetime] = None,
                  preview_count: int = 3) -> CronValidationResult:
    """Validate an expression and preview its next run times"""
    expression = (cron_expression or "").strip()
    errors: List[str] = []

    fields = split_fields(expression)
    if len(fields) != CRON_FIELD_COUNT:
        errors.append(f"Expected {CRON_FIELD_COUNT} fields, got {len(fields)}")
    elif not croniter.is_valid(expression):
        errors.append("Expression is not a valid cron schedule")

    next_runs: List[datetime] = []
    if not errors:
        try:
            iterator = croniter(expression, base_time or utcnow())
            next_runs = [iterator.get_next(datetime) for _ in range(preview_count)]
        except (ValueError, KeyError) as e:
            errors.append(str(e))

    return CronValidationResult(
        cron_expression=expression,
        is_valid=not errors,
        errors=errors,
        next_runs=next_runs
    )


def is_valid_cron(cron_expression: str) -> bool:
    return validate_cron(cron_expression, preview_count=0).is_valid


def next_fire_in(cron_expression: str, start: datetime, end: datetime) -> Optional[datetime]:
    """First fire time ``t`` with ``start <= t < end``, or None"""
    iterator = croniter(cron_expression, start - timedelta(seconds=1))
    fire_time = iterator.get_next(datetime)
    if start <= fire_time < end:
        return fire_time
    return None


def fixed_time(cron_expression: str) -> Optional[Tuple[int, int]]:
    """(minute, hour) when both fields are single values, else None"""
    fields = split_fields(cron_expression)
    if len(fields) != CRON_FIELD_COUNT:
        return None
    minute, hour = fields[0], fields[1]
    if minute.isdigit() and hour.isdigit():
        return int(minute), int(hour)
    return None


def with_time(cron_expression: str, minute: Optional[int] = None,
              hour: Optional[int] = None) -> str:
    """Rewrite the minute and/or hour field of an expression"""
    fields = split_fields(cron_expression)
    if minute is not None:
        fields[0] = str(minute)
    if hour is not None:
        fields[1] = str(hour)
    return " ".join(fields)
