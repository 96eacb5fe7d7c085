# rule_scheduler/api/deps.py
from fastapi import Request

from rule_scheduler.core.config import Settings
from rule_scheduler.services.pipeline import SchedulingPipeline
from rule_scheduler.services.predictive_scheduler import PredictiveSchedulingEngine
from rule_scheduler.services.resource_optimizer import ResourceOptimizationEngine
from rule_scheduler.services.rule_generation import RuleGenerationEngine
from rule_scheduler.services.store import SchedulerStore


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_rule_engine(request: Request) -> RuleGenerationEngine:
    return request.app.state.rule_engine


def get_predictive_engine(request: Request) -> PredictiveSchedulingEngine:
    return request.app.state.predictive_engine


def get_optimization_engine(request: Request) -> ResourceOptimizationEngine:
    return request.app.state.optimization_engine


def get_pipeline(request: Request) -> SchedulingPipeline:
    return request.app.state.pipeline


def get_store(request: Request) -> SchedulerStore:
    return request.app.state.store
