# rule_scheduler/models/database.py
from sqlalchemy import Column, String, DateTime, JSON, Float, Integer, Boolean, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy import Index
import uuid

from rule_scheduler.utils.clock import utcnow

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class ActivityPatternRecord(Base):
    __tablename__ = "activity_patterns"

    id = Column(String(36), primary_key=True, default=new_id)
    pattern_type = Column(String(50), nullable=False)  # see PatternType
    pattern_data = Column(JSON, nullable=False)
    confidence_score = Column(Float, nullable=False, default=0.0)
    detection_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    first_detected_at = Column(DateTime, default=utcnow)
    last_detected_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_activity_patterns_type', 'pattern_type'),
        Index('idx_activity_patterns_active_confidence', 'is_active', 'confidence_score'),
    )


class SchedulingRuleRecord(Base):
    __tablename__ = "scheduling_rules"

    id = Column(String(36), primary_key=True, default=new_id)
    pattern_id = Column(String(36), nullable=True, index=True)
    rule_name = Column(String(255), nullable=False)
    description = Column(Text)
    task_type = Column(String(50))
    cron_expression = Column(String(100), nullable=False)
    priority = Column(Integer, nullable=False, default=50)
    is_enabled = Column(Boolean, nullable=False, default=True)
    is_auto_generated = Column(Boolean, nullable=False, default=True)
    confidence_score = Column(Float, nullable=False, default=0.0)
    trigger_count = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=1.0)
    llm_model_used = Column(String(100))
    last_triggered_at = Column(DateTime)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('idx_scheduling_rules_enabled_priority', 'is_enabled', 'priority'),
        Index('idx_scheduling_rules_cron', 'cron_expression'),
    )


class PredictiveScheduleRecord(Base):
    __tablename__ = "predictive_schedules"

    id = Column(String(36), primary_key=True, default=new_id)
    rule_id = Column(String(36), nullable=True, index=True)
    pattern_id = Column(String(36), nullable=True)
    source = Column(String(20), nullable=False)  # pattern, rule, behavior
    predicted_task_type = Column(String(50), nullable=False)
    predicted_execution_time = Column(DateTime, nullable=False)
    confidence_score = Column(Float, nullable=False)
    resource_requirements = Column(JSON)
    is_scheduled = Column(Boolean, nullable=False, default=False)
    task_id = Column(String(36))
    actual_execution_time = Column(DateTime)
    prediction_accuracy = Column(Float)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_predictive_schedules_time', 'predicted_execution_time'),
        Index('idx_predictive_schedules_scheduled', 'is_scheduled'),
    )


class OptimizationResultRecord(Base):
    __tablename__ = "optimization_results"

    id = Column(String(36), primary_key=True, default=new_id)
    optimization_type = Column(String(50), nullable=False)
    original_schedule = Column(JSON, nullable=False)
    optimized_schedule = Column(JSON, nullable=False)
    improvement_metrics = Column(JSON, nullable=False)
    success = Column(Boolean, nullable=False, default=False)
    applied_at = Column(DateTime)
    status = Column(String(20), nullable=False)
    error_message = Column(Text)
    changed_rule_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=utcnow, index=True)


class UserBehaviorProfileRecord(Base):
    __tablename__ = "user_behavior_profiles"

    user_id = Column(String(100), primary_key=True, default="default")
    activity_patterns = Column(JSON, nullable=False, default=list)
    peak_hours = Column(JSON, nullable=False, default=list)
    preferred_task_types = Column(JSON, nullable=False, default=list)
    interaction_frequency = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime, default=utcnow, onupdate=utcnow)


class TaskRecord(Base):
    """Historical and materialized tasks; the execution feed the engines read"""
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=new_id)
    type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending, running, completed, failed
    description = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    scheduled_for = Column(DateTime)
    task_metadata = Column("metadata", JSON)

    __table_args__ = (
        Index('idx_tasks_type_created', 'type', 'created_at'),
        Index('idx_tasks_status', 'status'),
    )
