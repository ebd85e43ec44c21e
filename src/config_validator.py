"""
Configuration validation for Volume Sentinel.

Misconfiguration is an operator mistake, so it is rejected eagerly: the
settings models call `ensure_valid_*` from their validators, and the
detector calls them again on every `update_config`. The same checks also
feed `ConfigurationValidator`, which produces a full report for the CLI
instead of stopping at the first failure.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .exceptions import InvalidConfigError
from .schemas import RollingWindow
from .secure_logging import get_secure_logger

logger = get_secure_logger(__name__)

Z_SCORE_TIERS = (
    "low_z_score_threshold",
    "medium_z_score_threshold",
    "high_z_score_threshold",
    "critical_z_score_threshold",
)

PERCENTAGE_TIERS = (
    "low_percentage_threshold",
    "medium_percentage_threshold",
    "high_percentage_threshold",
    "critical_percentage_threshold",
)


@dataclass
class ValidationResult:
    """Result of a configuration validation check."""
    check_name: str
    passed: bool
    level: str  # "critical", "warning", "info"
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    suggestions: List[str] = field(default_factory=list)


@dataclass
class ValidationSummary:
    """Summary of all validation results."""
    total_checks: int = 0
    passed_checks: int = 0
    failed_checks: int = 0
    warnings: int = 0
    critical_failures: int = 0
    results: List[ValidationResult] = field(default_factory=list)
    is_valid: bool = True

    def add_result(self, result: ValidationResult):
        """Add a validation result."""
        self.results.append(result)
        self.total_checks += 1

        if result.passed:
            self.passed_checks += 1
        else:
            self.failed_checks += 1
            if result.level == "critical":
                self.critical_failures += 1
            elif result.level == "warning":
                self.warnings += 1

        self.is_valid = self.critical_failures == 0


def _passed(check_name: str, message: str) -> ValidationResult:
    return ValidationResult(check_name=check_name, passed=True, level="info", message=message)


def _failed(check_name: str, key: str, value: Any, message: str,
            level: str = "critical", suggestion: Optional[str] = None) -> ValidationResult:
    return ValidationResult(
        check_name=check_name,
        passed=False,
        level=level,
        message=message,
        details={"config_key": key, "config_value": value},
        suggestions=[suggestion] if suggestion else [],
    )


def _check_ascending(settings: Any, check_name: str, keys: tuple,
                     floor: float) -> ValidationResult:
    values = [getattr(settings, key) for key in keys]
    if values[0] <= floor:
        return _failed(check_name, keys[0], values[0],
                       f"{keys[0]} must be greater than {floor}")
    for lower_key, upper_key, lower, upper in zip(keys, keys[1:], values, values[1:]):
        if not upper > lower:
            return _failed(
                check_name, upper_key, upper,
                f"{upper_key} ({upper}) must be greater than {lower_key} ({lower})",
                suggestion="Severity tiers must be strictly ascending: low < medium < high < critical",
            )
    return _passed(check_name, f"Tiers ascending: {values}")


def _check_minimum(settings: Any, key: str, minimum: float,
                   inclusive: bool = True) -> ValidationResult:
    value = getattr(settings, key)
    ok = value >= minimum if inclusive else value > minimum
    if ok:
        return _passed(key, f"{key}={value}")
    relation = "at least" if inclusive else "greater than"
    return _failed(key, key, value, f"{key} must be {relation} {minimum}")


def check_spike_settings(settings: Any) -> List[ValidationResult]:
    """Run every spike detection check and return all results."""
    results = [
        _check_ascending(settings, "z_score_tiers", Z_SCORE_TIERS, 0.0),
        # Percentage tiers are multiples of baseline; 1.0 means "equal to baseline"
        _check_ascending(settings, "percentage_tiers", PERCENTAGE_TIERS, 1.0),
        _check_minimum(settings, "min_consecutive_points", 1),
        _check_minimum(settings, "max_gap_minutes", 0, inclusive=False),
        _check_minimum(settings, "min_duration_minutes", 0),
        _check_minimum(settings, "cooldown_ms", 0),
        _check_minimum(settings, "max_recent_spikes", 1),
        _check_minimum(settings, "max_entity_history", 1),
        _check_minimum(settings, "frequency_window_minutes", 0, inclusive=False),
        _check_minimum(settings, "max_tracked_entities", 1),
    ]

    threshold = settings.absolute_volume_threshold
    if threshold is not None and not threshold > 0:
        results.append(_failed("absolute_volume_threshold", "absolute_volume_threshold",
                               threshold, "absolute_volume_threshold must be positive when set"))
    else:
        results.append(_passed("absolute_volume_threshold", f"absolute_volume_threshold={threshold}"))

    if not (settings.use_z_score_detection or settings.use_percentage_detection
            or threshold is not None):
        results.append(_failed(
            "detection_methods", "use_z_score_detection", False,
            "At least one detection method must be enabled",
            suggestion="Enable z-score or percentage detection, or set absolute_volume_threshold",
        ))
    else:
        results.append(_passed("detection_methods", "Detection method enabled"))

    return results


def check_baseline_settings(settings: Any) -> List[ValidationResult]:
    """Run every baseline tracker check and return all results."""
    results = [
        _check_minimum(settings, "sample_interval_seconds", 0, inclusive=False),
        _check_minimum(settings, "min_sample_count", 1),
        _check_minimum(settings, "min_data_density", 0, inclusive=False),
        _check_minimum(settings, "max_samples_per_entity", 1),
        _check_minimum(settings, "max_tracked_entities", 1),
        _check_minimum(settings, "breach_z_score_threshold", 0, inclusive=False),
        _check_minimum(settings, "baseline_cache_size", 1),
    ]

    if settings.min_data_density > 1:
        results.append(_failed("min_data_density_upper", "min_data_density",
                               settings.min_data_density,
                               "min_data_density cannot exceed 1.0"))

    if not settings.windows:
        results.append(_failed("windows", "windows", settings.windows,
                               "At least one rolling window must be configured"))

    max_age = settings.max_sample_age_hours
    if max_age is not None and not max_age > 0:
        results.append(_failed("max_sample_age_hours", "max_sample_age_hours", max_age,
                               "max_sample_age_hours must be positive when set"))

    return results


def _raise_first_critical(results: List[ValidationResult]) -> None:
    for result in results:
        if not result.passed and result.level == "critical":
            logger.error("configuration_rejected",
                         check=result.check_name,
                         reason=result.message)
            raise InvalidConfigError(
                result.details.get("config_key", result.check_name),
                result.details.get("config_value"),
                constraint=result.message,
            )


def ensure_valid_spike_settings(settings: Any) -> None:
    """Raise InvalidConfigError on the first critical spike setting failure."""
    _raise_first_critical(check_spike_settings(settings))


def ensure_valid_baseline_settings(settings: Any) -> None:
    """Raise InvalidConfigError on the first critical baseline setting failure."""
    _raise_first_critical(check_baseline_settings(settings))


def expected_samples(window: RollingWindow, sample_interval_seconds: float) -> int:
    """Expected sample count for a window at the configured cadence."""
    return max(1, int(window.duration.total_seconds() // sample_interval_seconds))


class ConfigurationValidator:
    """
    Full configuration report.

    Unlike the `ensure_*` helpers this never raises; it collects every
    failure plus cross-section warnings (for example a primary window that
    can never reach the minimum sample count at the configured cadence).
    """

    def __init__(self, settings: Any):
        self.settings = settings
        self.summary = ValidationSummary()

    def validate_all(self) -> ValidationSummary:
        logger.info("configuration_validation_starting")

        for result in check_baseline_settings(self.settings.baseline):
            self.summary.add_result(result)
        for result in check_spike_settings(self.settings.spike):
            self.summary.add_result(result)
        self.summary.add_result(self._check_primary_window_reachable())

        logger.info("configuration_validation_complete",
                    total_checks=self.summary.total_checks,
                    failed_checks=self.summary.failed_checks,
                    critical_failures=self.summary.critical_failures,
                    is_valid=self.summary.is_valid)
        return self.summary

    def _check_primary_window_reachable(self) -> ValidationResult:
        baseline = self.settings.baseline
        window = self.settings.spike.primary_window
        if not baseline.sample_interval_seconds > 0:
            return _failed("primary_window_reachable", "sample_interval_seconds",
                           baseline.sample_interval_seconds,
                           "Cannot evaluate primary window without a positive cadence",
                           level="warning")
        expected = expected_samples(window, baseline.sample_interval_seconds)
        if expected < baseline.min_sample_count:
            return _failed(
                "primary_window_reachable", "primary_window", window.value,
                f"Primary window {window.value} expects {expected} samples but "
                f"{baseline.min_sample_count} are required; baselines stay unreliable",
                level="warning",
                suggestion="Use a longer primary window or a shorter sample interval",
            )
        return _passed("primary_window_reachable",
                       f"Primary window {window.value} expects {expected} samples")
