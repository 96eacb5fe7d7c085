"""Tests for PredictiveSchedulingEngine."""

from datetime import datetime, timedelta

import pandas as pd
import pytest

from rule_scheduler.core.exceptions import PredictionNotFoundException
from rule_scheduler.models.schemas import (
    PredictionSource, PredictiveSchedule, TaskCorrelation, UserActivityPattern, UserBehaviorProfile
)
from rule_scheduler.services.predictive_scheduler import (
    PredictiveSchedulingEngine, average_durations, limit_per_hour, recency_boost
)

from tests.conftest import (
    NOW, BrokenInference, FailingMaterializer, ScalingInference, make_pattern, make_rule
)


def _prediction(hour: int, minute: int, confidence: float) -> PredictiveSchedule:
    return PredictiveSchedule(
        source=PredictionSource.PATTERN,
        predicted_task_type="backup",
        predicted_execution_time=NOW.replace(hour=hour, minute=minute),
        confidence_score=confidence,
    )


@pytest.fixture
def engine(store, settings, materializer):
    return PredictiveSchedulingEngine(store, settings, materializer=materializer)


class TestHelpers:
    def test_recency_boost_steps(self):
        assert recency_boost(NOW - timedelta(hours=2), NOW) == 0.10
        assert recency_boost(NOW - timedelta(days=3), NOW) == 0.05
        assert recency_boost(NOW - timedelta(days=20), NOW) == 0.02
        assert recency_boost(NOW - timedelta(days=90), NOW) == 0.0
        assert recency_boost(None, NOW) == 0.0

    def test_limit_per_hour_keeps_highest_confidence(self):
        predictions = [
            _prediction(2, 0, 0.71),
            _prediction(2, 30, 0.95),
            _prediction(2, 10, 0.80),
            _prediction(3, 0, 0.72),
        ]

        limited = limit_per_hour(predictions, 2)

        assert [(p.predicted_execution_time.hour, p.confidence_score) for p in limited] == [
            (2, 0.80), (2, 0.95), (3, 0.72)
        ]

    def test_average_durations_rounds_up(self):
        history = pd.DataFrame([
            {"type": "backup", "status": "completed", "created_at": NOW,
             "started_at": NOW, "finished_at": NOW + timedelta(minutes=20)},
            {"type": "backup", "status": "completed", "created_at": NOW,
             "started_at": NOW, "finished_at": NOW + timedelta(minutes=21)},
            {"type": "download", "status": "running", "created_at": NOW,
             "started_at": NOW, "finished_at": None},
        ])

        assert average_durations(history) == {"backup": 21.0}

    def test_average_durations_empty(self):
        assert average_durations(pd.DataFrame(columns=["type", "status", "created_at", "started_at", "finished_at"])) == {}

    def test_time_slots(self, engine):
        slots = engine.time_slots(NOW, 2)
        assert slots == [NOW + timedelta(minutes=30 * i) for i in range(4)]


class TestGeneratePredictions:
    @pytest.mark.asyncio
    async def test_pattern_window_predicts_each_slot(self, engine, store, materializer):
        pattern = await store.save_pattern(make_pattern(confidence=0.85, start_hour=2, end_hour=3))

        predictions = await engine.generate_predictions(horizon_hours=24, now=NOW)

        assert [p.predicted_execution_time for p in predictions] == [
            NOW.replace(hour=2), NOW.replace(hour=2, minute=30)
        ]
        assert all(p.source == PredictionSource.PATTERN for p in predictions)
        assert all(p.pattern_id == pattern.id for p in predictions)
        assert all(p.confidence_score == pytest.approx(0.85) for p in predictions)
        assert not any(p.is_scheduled for p in predictions)
        assert materializer.committed == []

    @pytest.mark.asyncio
    async def test_recent_frequent_pattern_is_boosted_and_capped(self, engine, store):
        await store.save_pattern(make_pattern(
            confidence=0.9, detection_count=50, last_detected_at=NOW - timedelta(hours=1)
        ))

        predictions = await engine.generate_predictions(horizon_hours=4, now=NOW)

        assert {p.confidence_score for p in predictions} == {0.95}

    @pytest.mark.asyncio
    async def test_rule_predicted_at_fire_time(self, engine, store):
        rule = (await store.save_rule_batch([make_rule(cron="10 3 * * *", confidence=0.8)]))[0]

        predictions = await engine.generate_predictions(horizon_hours=24, now=NOW)

        assert len(predictions) == 1
        assert predictions[0].source == PredictionSource.RULE
        assert predictions[0].rule_id == rule.id
        assert predictions[0].predicted_execution_time == NOW.replace(hour=3, minute=10)
        assert predictions[0].predicted_task_type == "backup"

    @pytest.mark.asyncio
    async def test_low_confidence_and_disabled_rules_ignored(self, engine, store):
        await store.save_rule_batch([
            make_rule(cron="0 1 * * *", confidence=0.6),
            make_rule(cron="0 2 * * *", confidence=0.9, enabled=False),
        ])

        assert await engine.generate_predictions(horizon_hours=24, now=NOW) == []

    @pytest.mark.asyncio
    async def test_per_hour_cap(self, store, settings, materializer):
        settings.max_predictions_per_hour = 2
        engine = PredictiveSchedulingEngine(store, settings, materializer=materializer)
        await store.save_rule_batch([
            make_rule(cron="*/15 * * * *", confidence=0.75),
            make_rule(cron="*/10 * * * *", confidence=0.8),
            make_rule(cron="*/5 * * * *", confidence=0.85),
        ])

        predictions = await engine.generate_predictions(horizon_hours=1, now=NOW)

        assert len(predictions) == 2
        assert all(p.confidence_score == pytest.approx(0.85) for p in predictions)

    @pytest.mark.asyncio
    async def test_behavior_profile_predictions(self, engine, store):
        await store.save_behavior_profile(UserBehaviorProfile(
            activity_patterns=[UserActivityPattern(
                action_type="import_photos",
                frequency=5,
                time_distribution={2: 0.9},
                day_distribution={1: 0.9},
                correlation_with_tasks=[
                    TaskCorrelation(task_type="organize", correlation_strength=0.9, success_rate=0.8),
                    TaskCorrelation(task_type="backup", correlation_strength=0.3, success_rate=0.9),
                ],
            )],
        ))

        predictions = await engine.generate_predictions(horizon_hours=24, now=NOW)

        assert [p.predicted_execution_time for p in predictions] == [
            NOW.replace(hour=2), NOW.replace(hour=2, minute=30)
        ]
        assert all(p.source == PredictionSource.BEHAVIOR for p in predictions)
        assert all(p.predicted_task_type == "organize" for p in predictions)
        assert all(p.confidence_score == pytest.approx(0.81) for p in predictions)

    @pytest.mark.asyncio
    async def test_durations_from_task_history(self, engine, store):
        day_before = NOW - timedelta(days=1)
        await store.add_task("backup", status="completed", created_at=day_before,
                             started_at=day_before, finished_at=day_before + timedelta(minutes=20, seconds=30))
        await store.save_pattern(make_pattern(confidence=0.85, task_types=["backup"]))
        await store.save_pattern(make_pattern(confidence=0.85, start_hour=5, end_hour=6, task_types=["download"]))

        predictions = await engine.generate_predictions(horizon_hours=24, now=NOW)
        durations = {p.predicted_task_type: p.resource_requirements.estimated_duration for p in predictions}

        assert durations == {"backup": 21.0, "download": 15.0}
        download = next(p for p in predictions if p.predicted_task_type == "download")
        assert download.resource_requirements.network_usage == 100
        assert "network" in download.resource_requirements.dependencies

    @pytest.mark.asyncio
    async def test_high_confidence_predictions_are_committed(self, engine, store, materializer):
        await store.save_pattern(make_pattern(confidence=0.92, start_hour=2, end_hour=3))

        predictions = await engine.generate_predictions(horizon_hours=24, now=NOW)

        assert all(p.is_scheduled for p in predictions)
        assert [p.task_id for p in predictions] == ["task-1", "task-2"]
        assert [c[1] for c in materializer.committed] == [NOW.replace(hour=2), NOW.replace(hour=2, minute=30)]
        assert len(await store.list_predictions(scheduled=True)) == 2

    @pytest.mark.asyncio
    async def test_reservation_disabled_skips_commit(self, store, settings, materializer):
        settings.resource_reservation_enabled = False
        engine = PredictiveSchedulingEngine(store, settings, materializer=materializer)
        await store.save_pattern(make_pattern(confidence=0.92))

        predictions = await engine.generate_predictions(horizon_hours=24, now=NOW)

        assert predictions and not any(p.is_scheduled for p in predictions)
        assert materializer.committed == []

    @pytest.mark.asyncio
    async def test_failed_materialization_keeps_prediction(self, store, settings):
        engine = PredictiveSchedulingEngine(store, settings, materializer=FailingMaterializer())
        await store.save_pattern(make_pattern(confidence=0.92))

        predictions = await engine.generate_predictions(horizon_hours=24, now=NOW)

        assert len(predictions) == 2
        assert not any(p.is_scheduled for p in predictions)
        assert len(await store.list_predictions()) == 2

    @pytest.mark.asyncio
    async def test_rerun_does_not_recommit_same_occurrence(self, engine, store, materializer):
        await store.save_rule_batch([make_rule(cron="0 2 * * *", confidence=0.95)])

        await engine.generate_predictions(horizon_hours=24, now=NOW)
        second = await engine.generate_predictions(horizon_hours=24, now=NOW + timedelta(hours=1))

        assert len(materializer.committed) == 1
        assert [p.task_id for p in second] == ["task-1"]
        stored = await store.list_predictions()
        assert [p.predicted_execution_time for p in stored] == [NOW.replace(hour=2)]

    @pytest.mark.asyncio
    async def test_rerun_refreshes_uncommitted_prediction(self, store, settings, materializer):
        settings.resource_reservation_enabled = False
        engine = PredictiveSchedulingEngine(store, settings, materializer=materializer)
        pattern = await store.save_pattern(make_pattern(confidence=0.8, start_hour=2, end_hour=3))

        first = await engine.generate_predictions(horizon_hours=24, now=NOW)
        await store.save_pattern(pattern.model_copy(update={"confidence_score": 0.85}))
        second = await engine.generate_predictions(horizon_hours=24, now=NOW)

        assert [p.id for p in second] == [p.id for p in first]
        assert all(p.confidence_score == pytest.approx(0.85) for p in second)
        assert len(await store.list_predictions()) == 2

    @pytest.mark.asyncio
    async def test_inference_can_rescore_below_threshold(self, store, settings, materializer):
        inference = ScalingInference(0.5)
        engine = PredictiveSchedulingEngine(store, settings, inference=inference, materializer=materializer)
        await store.save_pattern(make_pattern(confidence=0.85))

        predictions = await engine.generate_predictions(horizon_hours=24, now=NOW)

        assert predictions == []
        assert inference.calls == 2

    @pytest.mark.asyncio
    async def test_inference_failure_keeps_heuristic_predictions(self, store, settings, materializer):
        engine = PredictiveSchedulingEngine(store, settings, inference=BrokenInference(), materializer=materializer)
        await store.save_pattern(make_pattern(confidence=0.85))

        predictions = await engine.generate_predictions(horizon_hours=24, now=NOW)

        assert len(predictions) == 2

    @pytest.mark.asyncio
    async def test_disabled(self, store, settings):
        settings.predictive_scheduling_enabled = False
        engine = PredictiveSchedulingEngine(store, settings)
        await store.save_pattern(make_pattern(confidence=0.95))

        assert await engine.generate_predictions(now=NOW) == []
        assert await store.list_predictions() == []


class TestPredictionLifecycle:
    @pytest.mark.asyncio
    async def test_record_outcome_scores_accuracy(self, engine, store):
        await store.save_pattern(make_pattern(confidence=0.85))
        prediction = (await engine.generate_predictions(horizon_hours=24, now=NOW))[0]

        scored = await engine.record_outcome(prediction.id, prediction.predicted_execution_time + timedelta(hours=1))

        assert scored.prediction_accuracy == pytest.approx(1 - 60 / 1440)
        assert scored.actual_execution_time == prediction.predicted_execution_time + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_record_outcome_far_off_scores_zero(self, engine, store):
        await store.save_pattern(make_pattern(confidence=0.85))
        prediction = (await engine.generate_predictions(horizon_hours=24, now=NOW))[0]

        scored = await engine.record_outcome(prediction.id, prediction.predicted_execution_time + timedelta(days=3))

        assert scored.prediction_accuracy == 0.0

    @pytest.mark.asyncio
    async def test_record_outcome_unknown_prediction(self, engine):
        with pytest.raises(PredictionNotFoundException):
            await engine.record_outcome("missing", NOW)

    @pytest.mark.asyncio
    async def test_expire_removes_only_stale_uncommitted(self, engine, store):
        await store.save_pattern(make_pattern(confidence=0.85, start_hour=2, end_hour=3))
        await store.save_pattern(make_pattern(confidence=0.92, start_hour=4, end_hour=5))
        await engine.generate_predictions(horizon_hours=24, now=NOW)

        removed = await engine.expire_stale_predictions(now=NOW + timedelta(hours=30))

        remaining = await store.list_predictions()
        assert removed == 2
        assert len(remaining) == 2
        assert all(p.is_scheduled for p in remaining)

    @pytest.mark.asyncio
    async def test_list_predictions_filters(self, engine, store):
        await store.save_pattern(make_pattern(confidence=0.85, start_hour=2, end_hour=3))
        await store.save_pattern(make_pattern(confidence=0.92, start_hour=4, end_hour=5))
        await engine.generate_predictions(horizon_hours=24, now=NOW)

        early = await engine.list_predictions(end=NOW.replace(hour=3))
        scheduled = await engine.list_predictions(scheduled=True)

        assert len(early) == 2
        assert all(p.predicted_execution_time.hour == 4 for p in scheduled)
