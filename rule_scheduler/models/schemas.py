# rule_scheduler/models/schemas.py
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum
import uuid

from rule_scheduler.utils.clock import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


# Enums
class PatternType(str, Enum):
    DAILY_RECURRING = "daily_recurring"
    WEEKLY_RECURRING = "weekly_recurring"
    MONTHLY_RECURRING = "monthly_recurring"
    USER_BEHAVIOR = "user_behavior"
    RESOURCE_USAGE = "resource_usage"
    TASK_CORRELATION = "task_correlation"
    SEASONAL = "seasonal"
    CUSTOM = "custom"


class ConflictType(str, Enum):
    TIME_OVERLAP = "time_overlap"
    RESOURCE_CONTENTION = "resource_contention"
    DEPENDENCY_CYCLE = "dependency_cycle"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PredictionSource(str, Enum):
    PATTERN = "pattern"
    RULE = "rule"
    BEHAVIOR = "behavior"


class OptimizationType(str, Enum):
    LOAD_BALANCING = "load_balancing"
    PEAK_MITIGATION = "peak_mitigation"
    RESOURCE_OPTIMIZATION = "resource_optimization"
    CONFLICT_RESOLUTION = "conflict_resolution"
    EFFICIENCY_IMPROVEMENT = "efficiency_improvement"


class OptimizationStatus(str, Enum):
    CAPTURED = "captured"
    FORECASTED = "forecasted"
    STRATEGY_APPLIED = "strategy_applied"
    MEASURED = "measured"
    COMMITTED = "committed"
    RECORDED_ONLY = "recorded_only"


class BackendName(str, Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    AUTO = "auto"


# Patterns
class TimeWindow(BaseModel):
    start_hour: int = Field(..., ge=0, le=23)
    end_hour: int = Field(..., ge=1, le=24)  # 24 means until midnight
    days_of_week: Optional[List[int]] = None  # 0 = Sunday
    days_of_month: Optional[List[int]] = None

    @field_validator('days_of_week')
    @classmethod
    def validate_days_of_week(cls, v):
        if v is not None and any(d < 0 or d > 6 for d in v):
            raise ValueError('days_of_week entries must be between 0 (Sunday) and 6')
        return v

    @field_validator('days_of_month')
    @classmethod
    def validate_days_of_month(cls, v):
        if v is not None and any(d < 1 or d > 31 for d in v):
            raise ValueError('days_of_month entries must be between 1 and 31')
        return v

    @model_validator(mode='after')
    def validate_hours(self):
        if self.start_hour >= self.end_hour:
            raise ValueError('start_hour must be before end_hour')
        return self

    def contains(self, hour: int, day_of_week: int, day_of_month: int) -> bool:
        if not self.start_hour <= hour < self.end_hour:
            return False
        if self.days_of_week and day_of_week not in self.days_of_week:
            return False
        if self.days_of_month and day_of_month not in self.days_of_month:
            return False
        return True


class PatternData(BaseModel):
    model_config = ConfigDict(extra="allow")

    frequency: float = Field(0.0, ge=0)
    time_windows: List[TimeWindow] = []
    task_types: List[str] = []
    user_actions: Optional[List[str]] = None
    correlation_strength: Optional[float] = Field(None, ge=0, le=1)


class ActivityPattern(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    pattern_type: PatternType
    pattern_data: PatternData
    confidence_score: float = Field(..., ge=0, le=1)
    detection_count: int = Field(0, ge=0)
    is_active: bool = True
    first_detected_at: datetime = Field(default_factory=utcnow)
    last_detected_at: datetime = Field(default_factory=utcnow)


# Rules
class SchedulingRule(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    pattern_id: Optional[str] = None
    rule_name: str
    description: Optional[str] = None
    task_type: Optional[str] = None
    cron_expression: str
    priority: int = Field(50, ge=1, le=100)  # lower = higher precedence
    is_enabled: bool = True
    is_auto_generated: bool = True
    confidence_score: float = Field(..., ge=0, le=1)
    trigger_count: int = Field(0, ge=0)
    success_rate: float = Field(1.0, ge=0, le=1)
    llm_model_used: Optional[str] = None
    last_triggered_at: Optional[datetime] = None
    version: Optional[int] = None  # None until persisted
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RuleConflict(BaseModel):
    rule_id_1: str
    rule_id_2: str
    conflict_type: ConflictType
    severity: Severity
    resolution_suggestion: str


class GenerationSummary(BaseModel):
    total_generated: int = 0
    auto_enabled: int = 0
    requires_review: int = 0
    conflicts_detected: int = 0


class RuleGenerationResponse(BaseModel):
    generated_rules: List[SchedulingRule] = []
    generation_summary: GenerationSummary = Field(default_factory=GenerationSummary)
    conflicts: List[RuleConflict] = []


class CronValidationResult(BaseModel):
    cron_expression: str
    is_valid: bool
    errors: List[str] = []
    next_runs: List[datetime] = []


# Predictions
class ResourceRequirements(BaseModel):
    estimated_duration: float = Field(..., ge=0)  # minutes
    cpu_usage: float = Field(0.0, ge=0)  # percent
    memory_usage: float = Field(0.0, ge=0)  # MB
    disk_usage: float = Field(0.0, ge=0)  # MB
    network_usage: float = Field(0.0, ge=0)  # Mbps
    dependencies: List[str] = []


class PredictiveSchedule(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    rule_id: Optional[str] = None
    pattern_id: Optional[str] = None
    source: PredictionSource
    predicted_task_type: str
    predicted_execution_time: datetime
    confidence_score: float = Field(..., ge=0, le=1)
    resource_requirements: Optional[ResourceRequirements] = None
    is_scheduled: bool = False
    task_id: Optional[str] = None
    actual_execution_time: Optional[datetime] = None
    prediction_accuracy: Optional[float] = Field(None, ge=0, le=1)
    created_at: Optional[datetime] = None


class TaskCorrelation(BaseModel):
    task_type: str
    correlation_strength: float = Field(..., ge=0, le=1)
    typical_delay_minutes: int = Field(0, ge=0)
    success_rate: float = Field(..., ge=0, le=1)


class UserActivityPattern(BaseModel):
    action_type: str
    frequency: float = Field(0.0, ge=0)
    time_distribution: Dict[int, float] = {}  # hour -> probability
    day_distribution: Dict[int, float] = {}  # day of week -> probability
    correlation_with_tasks: List[TaskCorrelation] = []


class UserBehaviorProfile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str = "default"
    activity_patterns: List[UserActivityPattern] = []
    peak_hours: List[int] = []
    preferred_task_types: List[str] = []
    interaction_frequency: float = 0.0
    last_updated: Optional[datetime] = None


# Optimization
class ResourceMetrics(BaseModel):
    cpu_usage: float = Field(0.0, ge=0)  # percent of capacity
    memory_usage: float = Field(0.0, ge=0)
    disk_io: float = Field(0.0, ge=0)
    network_io: float = Field(0.0, ge=0)
    concurrent_tasks: float = Field(0.0, ge=0)


class LoadPrediction(BaseModel):
    time_slot: datetime
    predicted_tasks: int = 0
    predicted_resource_usage: ResourceMetrics = Field(default_factory=ResourceMetrics)
    confidence: float = Field(1.0, ge=0, le=1)
    contributing_rule_ids: List[str] = []


class ScheduleSnapshot(BaseModel):
    timestamp: datetime
    active_rules: List[SchedulingRule] = []
    resource_utilization: ResourceMetrics = Field(default_factory=ResourceMetrics)
    predicted_load: List[LoadPrediction] = []


class ImprovementMetrics(BaseModel):
    resource_utilization_improvement: float = 0.0
    peak_load_reduction: float = 0.0
    conflict_reduction: float = 0.0
    efficiency_gain: float = 0.0
    estimated_time_savings: float = 0.0  # minutes


class OptimizationResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    optimization_type: OptimizationType
    original_schedule: ScheduleSnapshot
    optimized_schedule: ScheduleSnapshot
    improvement_metrics: ImprovementMetrics
    success: bool = False
    applied_at: Optional[datetime] = None
    status: OptimizationStatus = OptimizationStatus.CAPTURED
    error_message: Optional[str] = None
    changed_rule_ids: List[str] = []
    created_at: Optional[datetime] = None


# Request Models
class RuleGenerationRequest(BaseModel):
    pattern_ids: Optional[List[str]] = None
    backend: BackendName = BackendName.OLLAMA


class RuleUpdateRequest(BaseModel):
    rule_name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    task_type: Optional[str] = None
    cron_expression: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=100)
    is_enabled: Optional[bool] = None
    confidence_score: Optional[float] = Field(None, ge=0, le=1)
    success_rate: Optional[float] = Field(None, ge=0, le=1)

    @field_validator('cron_expression')
    @classmethod
    def validate_cron_text(cls, v):
        if v is not None and not v.strip():
            raise ValueError('cron_expression cannot be empty')
        return v.strip() if v else v


class CronValidationRequest(BaseModel):
    cron_expression: str = Field(..., min_length=1, max_length=100)


class PredictionRequest(BaseModel):
    horizon_hours: int = Field(24, ge=1, le=168)
    backend: BackendName = BackendName.AUTO


class PredictionOutcomeRequest(BaseModel):
    actual_execution_time: datetime


class OptimizationRequest(BaseModel):
    target_date: Optional[datetime] = None
    optimization_type: OptimizationType = OptimizationType.LOAD_BALANCING
    backend: BackendName = BackendName.AUTO


class PipelineRunRequest(BaseModel):
    pattern_ids: Optional[List[str]] = None
    horizon_hours: int = Field(24, ge=1, le=168)
    optimization_type: OptimizationType = OptimizationType.LOAD_BALANCING
    timeout_seconds: Optional[float] = Field(None, gt=0)


class PipelineRunResponse(BaseModel):
    rule_generation: RuleGenerationResponse
    predictions: List[PredictiveSchedule] = []
    optimization: Optional[OptimizationResult] = None
    skipped_stages: List[str] = []
    duration_ms: int = 0


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime
    database: Dict[str, Any] = {}
    features: Dict[str, bool] = {}
