# rule_scheduler/core/config.py
from functools import lru_cache
from typing import List, Optional, Any, Dict
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFLICT_RESOLUTION_STRATEGIES = ("priority", "merge", "disable_lower")
LLM_FALLBACK_STRATEGIES = ("ollama_first", "openai_first", "parallel")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SCHEDULER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Rule Scheduler Service"
    version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Server
    port: int = 8000
    host: str = "0.0.0.0"
    max_workers: int = 1
    allowed_origins: List[str] = Field(default=["http://localhost:3000", "http://127.0.0.1:3000"])

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/rule_scheduler.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Celery
    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_dir: str = "logs"
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    enable_structured_logging: bool = True

    # Monitoring
    enable_metrics: bool = True

    # Rule generation
    auto_generation_enabled: bool = True
    min_pattern_confidence: float = 0.8
    max_rules_per_pattern: int = Field(default=3, ge=1)
    conflict_resolution_strategy: str = "priority"
    auto_enable_confidence: float = 0.8

    # Predictive scheduling
    predictive_scheduling_enabled: bool = True
    prediction_confidence_threshold: float = 0.7
    max_predictions_per_hour: int = Field(default=10, ge=1)
    resource_reservation_enabled: bool = True
    prediction_validation_window_hours: int = Field(default=24, ge=1)
    auto_commit_confidence: float = 0.9
    prediction_slot_minutes: int = Field(default=30, ge=1, le=60)
    default_task_duration_minutes: int = Field(default=15, ge=1)
    history_window_days: int = Field(default=30, ge=1)
    max_concurrent_predictions: int = Field(default=10, ge=1)

    # Optimization
    auto_optimization_enabled: bool = True
    optimization_frequency_hours: int = Field(default=6, ge=1)
    optimization_horizon_hours: int = Field(default=24, ge=1)
    load_balancing_threshold: float = 0.8
    peak_mitigation_threshold: float = 0.9
    resource_efficiency_target: float = 0.75
    optimization_commit_threshold: float = 0.05
    max_commit_retries: int = Field(default=3, ge=1)
    stagger_minutes: int = Field(default=5, ge=1, le=30)

    # Capacity used to express load as a percentage
    cpu_capacity_percent: float = Field(default=100.0, gt=0)
    memory_capacity_mb: float = Field(default=8192.0, gt=0)
    disk_capacity_mb: float = Field(default=20480.0, gt=0)
    network_capacity_mbps: float = Field(default=100.0, gt=0)

    # Inference backends (optional enhancement)
    ollama_enabled: bool = False
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "qwen3:8b"
    openai_enabled: bool = False
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4"
    llm_fallback_strategy: str = "ollama_first"
    inference_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()

    @field_validator("conflict_resolution_strategy")
    @classmethod
    def validate_conflict_strategy(cls, v):
        if v not in CONFLICT_RESOLUTION_STRATEGIES:
            raise ValueError(f'Conflict resolution strategy must be one of: {CONFLICT_RESOLUTION_STRATEGIES}')
        return v

    @field_validator("llm_fallback_strategy")
    @classmethod
    def validate_fallback_strategy(cls, v):
        if v not in LLM_FALLBACK_STRATEGIES:
            raise ValueError(f'LLM fallback strategy must be one of: {LLM_FALLBACK_STRATEGIES}')
        return v

    @field_validator(
        "min_pattern_confidence",
        "auto_enable_confidence",
        "prediction_confidence_threshold",
        "auto_commit_confidence",
        "load_balancing_threshold",
        "peak_mitigation_threshold",
        "resource_efficiency_target",
        "optimization_commit_threshold",
    )
    @classmethod
    def validate_ratio(cls, v):
        if not 0 <= v <= 1:
            raise ValueError('Thresholds must be between 0 and 1')
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def llm_enabled(self) -> bool:
        return self.ollama_enabled or self.openai_enabled

    def get_database_config(self) -> Dict[str, Any]:
        """Get database configuration"""
        return {
            "url": self.database_url,
            "pool_size": self.database_pool_size,
            "max_overflow": self.database_max_overflow,
            "echo": self.debug
        }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
