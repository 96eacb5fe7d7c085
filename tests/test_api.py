"""Integration tests for the scheduling HTTP API."""

from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from rule_scheduler.main import create_app, status_code_for, wire_services
from rule_scheduler.core.exceptions import (
    ConcurrentModificationException, FeatureDisabledException, InvalidCronExpressionException,
    RuleNotFoundException, SchedulerServiceException, StoreUnavailableException
)
from rule_scheduler.services.inference import NullInferenceBackend
from rule_scheduler.services.resource_monitor import StaticResourceSampler

from tests.conftest import make_pattern, make_rule

API = "/api/v1/scheduling"


@pytest.fixture
async def client(store, settings, materializer) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(settings, use_lifespan=False)
    wire_services(
        app, store, settings,
        inference=NullInferenceBackend(),
        sampler=StaticResourceSampler(),
        materializer=materializer,
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestStatusMapping:
    @pytest.mark.parametrize("exc,expected", [
        (FeatureDisabledException("auto_optimization_enabled"), 409),
        (ConcurrentModificationException("rule-1"), 409),
        (RuleNotFoundException("rule-1"), 404),
        (InvalidCronExpressionException("* *", ["expected 5 fields"]), 422),
        (StoreUnavailableException("disk full"), 503),
        (SchedulerServiceException("boom"), 500),
    ])
    def test_status_code_for(self, exc, expected):
        assert status_code_for(exc) == expected


class TestRuleEndpoints:
    @pytest.mark.asyncio
    async def test_register_pattern_then_generate(self, client):
        pattern = make_pattern(confidence=0.9, start_hour=2).model_dump(mode="json")

        created = await client.post(f"{API}/patterns", json=pattern)
        assert created.status_code == 201

        response = await client.post(f"{API}/rules/generate", json={})
        assert response.status_code == 200
        body = response.json()
        assert body["generation_summary"]["total_generated"] == 1
        assert body["generated_rules"][0]["cron_expression"] == "0 2 * * *"
        assert body["generated_rules"][0]["pattern_id"] == created.json()["id"]

        listed = await client.get(f"{API}/rules", params={"enabled": True})
        assert [r["cron_expression"] for r in listed.json()] == ["0 2 * * *"]

    @pytest.mark.asyncio
    async def test_get_missing_rule(self, client):
        response = await client.get(f"{API}/rules/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["type"] == "RuleNotFoundException"

    @pytest.mark.asyncio
    async def test_patch_with_invalid_cron(self, client, store):
        rule = (await store.save_rule_batch([make_rule()]))[0]

        response = await client.patch(f"{API}/rules/{rule.id}", json={"cron_expression": "0 25 * * *"})

        assert response.status_code == 422
        assert (await store.get_rule(rule.id)).cron_expression == "0 2 * * *"

    @pytest.mark.asyncio
    async def test_patch_and_delete(self, client, store):
        rule = (await store.save_rule_batch([make_rule()]))[0]

        patched = await client.patch(f"{API}/rules/{rule.id}", json={"priority": 15})
        assert patched.status_code == 200
        assert patched.json()["priority"] == 15
        assert patched.json()["version"] == 2

        deleted = await client.delete(f"{API}/rules/{rule.id}")
        assert deleted.status_code == 204
        assert (await client.get(f"{API}/rules/{rule.id}")).status_code == 404

    @pytest.mark.asyncio
    async def test_patch_null_clears_description(self, client, store):
        rule = (await store.save_rule_batch([make_rule(description="nightly")]))[0]

        response = await client.patch(
            f"{API}/rules/{rule.id}", json={"description": None, "rule_name": None}
        )

        assert response.status_code == 200
        assert response.json()["description"] is None
        assert response.json()["rule_name"] == "Nightly backup"
        assert (await store.get_rule(rule.id)).description is None

    @pytest.mark.asyncio
    async def test_min_confidence_out_of_range(self, client):
        response = await client.get(f"{API}/rules", params={"min_confidence": 1.5})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_validate_cron(self, client):
        valid = await client.post(f"{API}/rules/validate-cron", json={"cron_expression": "30 2 * * 1-5"})
        invalid = await client.post(f"{API}/rules/validate-cron", json={"cron_expression": "61 * * * *"})

        assert valid.json()["is_valid"] is True
        assert len(valid.json()["next_runs"]) > 0
        assert invalid.json()["is_valid"] is False
        assert invalid.json()["errors"]


class TestPredictionEndpoints:
    @pytest.mark.asyncio
    async def test_generate_predictions_from_rules(self, client, store):
        await store.save_rule_batch([make_rule(cron="*/30 * * * *", confidence=0.8)])

        response = await client.post(f"{API}/predictions/generate", json={"horizon_hours": 2})

        assert response.status_code == 200
        predictions = response.json()
        assert predictions
        assert all(p["source"] == "rule" for p in predictions)

    @pytest.mark.asyncio
    async def test_disabled_prediction_returns_empty_list(self, client, store, settings):
        settings.predictive_scheduling_enabled = False
        await store.save_pattern(make_pattern(confidence=0.95))

        response = await client.post(f"{API}/predictions/generate", json={})

        assert response.status_code == 200
        assert response.json() == []
        assert await store.list_predictions() == []

    @pytest.mark.asyncio
    async def test_outcome_for_missing_prediction(self, client):
        response = await client.post(
            f"{API}/predictions/missing/outcome", json={"actual_execution_time": "2026-01-05T02:00:00"}
        )

        assert response.status_code == 404


class TestOptimizationEndpoints:
    @pytest.mark.asyncio
    async def test_run_and_fetch(self, client):
        response = await client.post(f"{API}/optimizations", json={"optimization_type": "conflict_resolution"})
        assert response.status_code == 200
        result = response.json()
        assert result["optimization_type"] == "conflict_resolution"

        fetched = await client.get(f"{API}/optimizations/{result['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == result["id"]

        listed = await client.get(f"{API}/optimizations")
        assert [r["id"] for r in listed.json()] == [result["id"]]

    @pytest.mark.asyncio
    async def test_missing_result(self, client):
        assert (await client.get(f"{API}/optimizations/missing")).status_code == 404


class TestPipelineAndHealth:
    @pytest.mark.asyncio
    async def test_pipeline_run(self, client, store):
        await store.save_pattern(make_pattern())

        response = await client.post(f"{API}/pipeline/run", json={"horizon_hours": 4})

        assert response.status_code == 200
        body = response.json()
        assert body["rule_generation"]["generation_summary"]["total_generated"] == 1
        assert body["skipped_stages"] == []
        assert body["optimization"] is not None

    @pytest.mark.asyncio
    async def test_scheduling_health_reports_features(self, client):
        response = await client.get(f"{API}/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] in ("healthy", "degraded")
        assert body["features"]["predictive_scheduling"] is True
        assert body["features"]["llm_inference"] is False

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]

    @pytest.mark.asyncio
    async def test_request_id_header(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert "X-Request-ID" in response.headers
        assert response.json()["endpoints"]["api_base"] == API
