"""
Exception hierarchy for Volume Sentinel.

Data-quality problems (unknown entities, thin baselines, malformed samples)
are never raised; they surface as result fields. The errors below cover
operator mistakes in configuration and programming errors inside the
detection core.
"""

from typing import Any, Dict, Optional


class SentinelError(Exception):
    """Base exception for all Volume Sentinel errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def __str__(self) -> str:
        if not self.details:
            return self.message
        context = ", ".join(f"{key}={value!r}" for key, value in self.details.items())
        return f"{self.message} [{context}]"


# =============================================================================
# Configuration
# =============================================================================

class ConfigurationError(SentinelError):
    """Settings cannot be used as given."""


class InvalidConfigError(ConfigurationError):
    """A setting has a value that breaks a constraint."""

    def __init__(self, config_key: str, config_value: Any, constraint: Optional[str] = None):
        self.config_key = config_key
        self.config_value = config_value
        self.constraint = constraint

        message = f"Invalid value {config_value!r} for setting '{config_key}'"
        if constraint:
            message = f"{message}: {constraint}"
        super().__init__(message, {'config_key': config_key, 'config_value': config_value})


class UnknownConfigKeyError(ConfigurationError):
    """A runtime update named a setting that does not exist."""

    def __init__(self, config_key: str, config_section: Optional[str] = None):
        self.config_key = config_key
        self.config_section = config_section

        qualified = f"{config_section}.{config_key}" if config_section else config_key
        super().__init__(f"Unknown setting '{qualified}'", {'config_key': qualified})


# =============================================================================
# Detection core
# =============================================================================

class DetectionError(SentinelError):
    """Internal failure in the tracker or detector."""


class BaselineInvariantError(DetectionError):
    """Computed baseline statistics are impossible (e.g. negative std)."""

    def __init__(self, entity_id: str, window: str, reason: str,
                 value: Optional[float] = None):
        self.entity_id = entity_id
        self.window = window
        self.reason = reason
        self.value = value

        details: Dict[str, Any] = {'entity_id': entity_id, 'window': window}
        if value is not None:
            details['value'] = value
        super().__init__(f"Baseline for window {window} is inconsistent: {reason}", details)


class SpikeStateError(DetectionError):
    """Per-entity spike state reached an impossible configuration."""

    def __init__(self, entity_id: str, reason: str):
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Spike state is inconsistent: {reason}", {'entity_id': entity_id})
