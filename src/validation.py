"""
Input validation layer for Volume Sentinel.

Provides validation for all data entering the detection core:
- Entity identifiers (market IDs, token IDs, wallet addresses)
- Volume and trade-count values
- Observation timestamps

Each validator offers a raising `validate` and a non-raising `is_valid`.
The tracker and detector use the non-raising forms: upstream data problems
must never take the surveillance pipeline down.
"""

import math
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


class EntityIdValidator:
    """Validates entity identifiers."""

    # Printable, no whitespace inside; markets, token ids and addresses all fit
    ENTITY_ID_PATTERN = re.compile(r'^[^\s]{1,256}$')

    @classmethod
    def validate(cls, entity_id: Any) -> str:
        """
        Validate and normalize an entity identifier.

        Args:
            entity_id: Raw entity identifier

        Returns:
            Stripped entity identifier

        Raises:
            ValidationError: If the identifier is empty or malformed
        """
        if not isinstance(entity_id, str):
            raise ValidationError(f"Entity ID must be string, got {type(entity_id)}")

        entity_id = entity_id.strip()

        if not entity_id:
            raise ValidationError("Entity ID cannot be empty")

        if not cls.ENTITY_ID_PATTERN.match(entity_id):
            raise ValidationError(f"Invalid entity ID format: {entity_id[:40]}")

        return entity_id

    @classmethod
    def is_valid(cls, entity_id: Any) -> bool:
        """Check if entity ID is valid without raising exception."""
        try:
            cls.validate(entity_id)
            return True
        except ValidationError:
            return False


class NumericValidator:
    """Validates numeric inputs for volume data."""

    @classmethod
    def validate_volume(cls, volume: Union[str, float, int, Decimal]) -> float:
        """
        Validate and normalize a volume value.

        Args:
            volume: Raw volume value

        Returns:
            Volume as a finite, non-negative float

        Raises:
            ValidationError: If volume is invalid
        """
        if isinstance(volume, bool):
            raise ValidationError(f"Invalid volume format: {volume}")

        try:
            volume_float = float(Decimal(str(volume)))
        except (ValueError, TypeError, InvalidOperation) as e:
            raise ValidationError(f"Invalid volume format: {volume} - {e}")

        if not math.isfinite(volume_float):
            raise ValidationError(f"Volume must be finite: {volume}")

        if volume_float < 0:
            raise ValidationError(f"Volume cannot be negative: {volume_float}")

        return volume_float

    @classmethod
    def is_valid_volume(cls, volume: Any) -> bool:
        """Check if volume is valid without raising exception."""
        try:
            cls.validate_volume(volume)
            return True
        except ValidationError:
            return False

    @classmethod
    def validate_trade_count(cls, trade_count: Optional[Any]) -> Optional[int]:
        """Validate an optional trade count."""
        if trade_count is None:
            return None
        if isinstance(trade_count, bool) or not isinstance(trade_count, int):
            raise ValidationError(f"Trade count must be an integer, got {type(trade_count)}")
        if trade_count < 0:
            raise ValidationError(f"Trade count cannot be negative: {trade_count}")
        return trade_count


class TimestampValidator:
    """Validates observation timestamps."""

    @classmethod
    def validate(cls, timestamp: Optional[Any]) -> datetime:
        """
        Normalize an observation timestamp to an aware UTC datetime.

        Accepts datetimes (naive ones are treated as UTC) and POSIX epoch
        seconds. None resolves to the current wall-clock time; this is the
        only place the detection core reads the clock.

        Raises:
            ValidationError: If the timestamp cannot be interpreted
        """
        if timestamp is None:
            return datetime.now(timezone.utc)

        if isinstance(timestamp, datetime):
            if timestamp.tzinfo is None:
                return timestamp.replace(tzinfo=timezone.utc)
            return timestamp

        if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
            if not math.isfinite(timestamp):
                raise ValidationError(f"Timestamp must be finite: {timestamp}")
            try:
                return datetime.fromtimestamp(timestamp, tz=timezone.utc)
            except (OverflowError, OSError, ValueError) as e:
                raise ValidationError(f"Timestamp out of range: {timestamp} - {e}")

        raise ValidationError(f"Unsupported timestamp type: {type(timestamp)}")


def validate_entity_id(entity_id: Any) -> str:
    """Convenience function for entity ID validation."""
    return EntityIdValidator.validate(entity_id)


def validate_volume(volume: Any) -> float:
    """Convenience function for volume validation."""
    return NumericValidator.validate_volume(volume)


def normalize_timestamp(timestamp: Optional[Any]) -> datetime:
    """Convenience function for timestamp normalization."""
    return TimestampValidator.validate(timestamp)
