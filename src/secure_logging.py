"""
Logging configuration for Volume Sentinel.

Structured logging via structlog. Entity identifiers are often wallet
addresses, and upstream payloads occasionally carry credentials, so every
event passes through a redaction processor before it is rendered:
- wallet-address entity ids are shortened to a recognizable prefix/suffix
- fields named like secrets are replaced outright
- key material and credentials embedded in free text are masked
"""

import logging
import re
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, WrappedLogger

# (label, pattern) pairs masked inside any string value
TEXT_REDACTIONS = (
    ("PRIVATE_KEY", re.compile(r'0x[a-fA-F0-9]{64}\b')),
    ("JWT", re.compile(r'eyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*')),
    ("AUTH_URL", re.compile(r'https?://[^/\s]*:[^@\s]*@\S+')),
)

# Any field whose name contains one of these is dropped entirely
SECRET_FIELD_MARKERS = ('password', 'secret', 'token', 'private_key', 'api_key', 'authorization')

# Fields holding identifiers that stay useful when shortened
IDENTIFIER_FIELDS = frozenset({'entity', 'entity_id', 'wallet', 'wallet_address', 'address', 'evicted'})

WALLET_ADDRESS_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')

MAX_NESTING = 10

# Logger-name fragment -> component tag
COMPONENTS = (
    ('baseline', 'baseline'),
    ('detection', 'detection'),
    ('alerts', 'alerts'),
    ('engine', 'engine'),
    ('main', 'cli'),
)


def redact_text(text: str) -> str:
    """Mask credentials and key material embedded in free text."""
    for label, pattern in TEXT_REDACTIONS:
        text = pattern.sub(f'[REDACTED_{label}]', text)
    return text


def mask_identifier(value: str, keep: int = 4) -> str:
    """Keep the `0x` prefix plus `keep` characters at each end."""
    if len(value) <= keep * 2 + 2:
        return value
    return f"{value[:keep + 2]}***{value[-keep:]}"


def redact_entity_id(entity_id: Any) -> Any:
    """Shorten entity ids that are wallet addresses; market ids pass through."""
    if isinstance(entity_id, str) and WALLET_ADDRESS_PATTERN.match(entity_id):
        return mask_identifier(entity_id)
    return entity_id


def _redact(key: str, value: Any, depth: int) -> Any:
    name = key.lower()
    if any(marker in name for marker in SECRET_FIELD_MARKERS):
        return '[REDACTED_SENSITIVE_FIELD]'
    if name in IDENTIFIER_FIELDS:
        return redact_entity_id(value)
    if isinstance(value, dict):
        return sanitize_dict(value, depth + 1)
    if isinstance(value, (list, tuple)):
        return [_redact(key, item, depth + 1) for item in value]
    if isinstance(value, str):
        return redact_text(value)
    return value


def sanitize_dict(data: Dict[str, Any], depth: int = 0) -> Dict[str, Any]:
    """Redact every field of a (possibly nested) mapping."""
    if depth > MAX_NESTING:
        return {"[DEEP_RECURSION]": "..."}
    return {key: _redact(str(key), value, depth) for key, value in data.items()}


def redact_event(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Structlog processor applying `sanitize_dict` to the whole event."""
    event = event_dict.pop('event', None)
    sanitized = sanitize_dict(event_dict)
    if event is not None:
        sanitized['event'] = redact_text(str(event))
    return sanitized


def tag_component(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add a `component` field derived from the logger name."""
    logger_name = str(event_dict.get('logger', ''))
    for fragment, component in COMPONENTS:
        if fragment in logger_name:
            event_dict['component'] = component
            break
    return event_dict


def configure_secure_logging(log_level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure structlog for the whole process.

    Args:
        log_level: Minimum level (DEBUG, INFO, WARNING, ERROR)
        json_format: Render JSON lines instead of colored console output
    """
    renderer = (
        structlog.processors.JSONRenderer() if json_format
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            tag_component,
            redact_event,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class SecureLogger:
    """
    Thin structlog wrapper that redacts keyword arguments up front and
    records the module name as `logger`, so redaction holds even before
    `configure_secure_logging` has run.
    """

    def __init__(self, name: str):
        self.name = name
        self._logger = structlog.get_logger(name)

    def _log(self, level: str, event: str, fields: Dict[str, Any]) -> None:
        getattr(self._logger, level)(event, logger=self.name, **sanitize_dict(fields))

    def debug(self, event: str, **fields):
        self._log("debug", event, fields)

    def info(self, event: str, **fields):
        self._log("info", event, fields)

    def warning(self, event: str, **fields):
        self._log("warning", event, fields)

    def error(self, event: str, **fields):
        self._log("error", event, fields)


def get_secure_logger(name: Optional[str] = None) -> SecureLogger:
    return SecureLogger(name or "volume_sentinel")
