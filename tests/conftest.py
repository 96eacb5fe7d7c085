"""Pytest configuration and fixtures."""

from datetime import datetime
from typing import AsyncGenerator, List, Tuple

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from rule_scheduler.core.config import Settings
from rule_scheduler.core.database import create_tables
from rule_scheduler.models.schemas import (
    ActivityPattern, PatternData, PatternType, ResourceMetrics, ResourceRequirements,
    SchedulingRule, TimeWindow
)
from rule_scheduler.services.inference import InferenceBackend
from rule_scheduler.services.resource_monitor import ResourceSampler
from rule_scheduler.services.store import SchedulerStore
from rule_scheduler.services.task_materializer import TaskMaterializer

# A Monday, so day_of_week() == 1
NOW = datetime(2026, 1, 5, 0, 0)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class RecordingMaterializer(TaskMaterializer):
    """Hands out sequential task ids and remembers what was committed."""

    def __init__(self):
        self.committed: List[Tuple[str, datetime, ResourceRequirements]] = []

    async def commit(self, task_type, execution_time, requirements):
        self.committed.append((task_type, execution_time, requirements))
        return f"task-{len(self.committed)}"


class FailingMaterializer(TaskMaterializer):
    async def commit(self, task_type, execution_time, requirements):
        raise RuntimeError("task queue is down")


class ScalingInference(InferenceBackend):
    """Multiplies every candidate's confidence by a fixed factor."""

    name = "scaling"

    def __init__(self, factor: float):
        self.factor = factor
        self.calls = 0

    def is_available(self, backend="auto"):
        return True

    async def enhance(self, candidates, context, backend="auto"):
        self.calls += 1
        return [
            c.model_copy(update={"confidence_score": min(1.0, c.confidence_score * self.factor)})
            for c in candidates
        ]


class BrokenInference(InferenceBackend):
    def is_available(self, backend="auto"):
        return True

    async def enhance(self, candidates, context, backend="auto"):
        raise RuntimeError("model crashed")


class BrokenSampler(ResourceSampler):
    def sample(self) -> ResourceMetrics:
        raise OSError("psutil unavailable")


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_pattern(pattern_type=PatternType.DAILY_RECURRING, confidence=0.9, frequency=0.0,
                 start_hour=2, end_hour=3, task_types=None, days_of_week=None,
                 days_of_month=None, detection_count=0, last_detected_at=None, **data) -> ActivityPattern:
    return ActivityPattern(
        pattern_type=pattern_type,
        pattern_data=PatternData(
            frequency=frequency,
            time_windows=[TimeWindow(
                start_hour=start_hour,
                end_hour=end_hour,
                days_of_week=days_of_week,
                days_of_month=days_of_month,
            )],
            task_types=task_types if task_types is not None else ["backup"],
            **data
        ),
        confidence_score=confidence,
        detection_count=detection_count,
        last_detected_at=last_detected_at or datetime(2025, 1, 1),
    )


def make_rule(cron="0 2 * * *", priority=50, confidence=0.9, enabled=True,
              name="Nightly backup", task_type="backup", **fields) -> SchedulingRule:
    return SchedulingRule(
        rule_name=name,
        description=fields.pop("description", f"{name} rule"),
        task_type=task_type,
        cron_expression=cron,
        priority=priority,
        is_enabled=enabled,
        confidence_score=confidence,
        **fields
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    """Default settings, ignoring any local .env file."""
    return Settings(_env_file=None, database_url="sqlite+aiosqlite://")


@pytest.fixture
async def session_maker() -> AsyncGenerator[async_sessionmaker, None]:
    """In-memory SQLite shared across sessions through a single connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_maker) -> SchedulerStore:
    return SchedulerStore(session_maker)


@pytest.fixture
def materializer() -> RecordingMaterializer:
    return RecordingMaterializer()
