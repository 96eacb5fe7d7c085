# rule_scheduler/core/exceptions.py
from typing import Any, Dict, List, Optional


class SchedulerServiceException(Exception):
    """Base exception for the rule scheduler service"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationException(SchedulerServiceException):
    """Raised when there's a configuration error"""

    def __init__(self, config_key: str, reason: str):
        super().__init__(
            f"Configuration error for '{config_key}': {reason}",
            {
                "config_key": config_key,
                "reason": reason
            }
        )


class FeatureDisabledException(ConfigurationException):
    """Raised when an operation is requested for a feature switched off in settings"""

    def __init__(self, feature: str):
        super().__init__(feature, f"{feature} is disabled")
        self.feature = feature


class RuleNotFoundException(SchedulerServiceException):
    """Raised when a scheduling rule is not found"""

    def __init__(self, rule_id: str):
        super().__init__(
            f"Scheduling rule '{rule_id}' not found",
            {"rule_id": rule_id}
        )


class PredictionNotFoundException(SchedulerServiceException):
    """Raised when a predictive schedule is not found"""

    def __init__(self, prediction_id: str):
        super().__init__(
            f"Predictive schedule '{prediction_id}' not found",
            {"prediction_id": prediction_id}
        )


class InvalidCronExpressionException(SchedulerServiceException):
    """Raised when a cron expression does not validate"""

    def __init__(self, cron_expression: str, errors: List[str]):
        super().__init__(
            f"Invalid cron expression '{cron_expression}': {'; '.join(errors)}",
            {
                "cron_expression": cron_expression,
                "errors": errors
            }
        )


class StoreUnavailableException(SchedulerServiceException):
    """Raised when the rule store cannot be reached"""

    def __init__(self, reason: str):
        super().__init__(
            f"Rule store unavailable: {reason}",
            {"reason": reason}
        )


class ConcurrentModificationException(SchedulerServiceException):
    """Raised when a rule changed underneath an in-flight transaction"""

    def __init__(self, rule_id: str, expected_version: Optional[int] = None,
                 actual_version: Optional[int] = None):
        message = f"Scheduling rule '{rule_id}' was modified concurrently"
        if expected_version is not None:
            message += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(
            message,
            {
                "rule_id": rule_id,
                "expected_version": expected_version,
                "actual_version": actual_version
            }
        )
