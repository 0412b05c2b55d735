"""Configuration loading for Criticality projects."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import jsonschema

from criticality.domain.escalation import EscalationConfig
from criticality.domain.exceptions import ConfigurationError
from criticality.domain.models import NotificationEvent
from criticality.schemas import validate_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelAssignments:
    """Model names assigned to each protocol role."""

    architect_model: str = "claude-opus-4.5"
    auditor_model: str = "kimi-k2"
    structurer_model: str = "claude-sonnet-4.5"
    worker_model: str = "minimax-m2"
    fallback_model: str = "claude-sonnet-4.5"


@dataclass(frozen=True)
class PathsConfig:
    specs: str = ".criticality/specs"
    archive: str = ".criticality/archive"
    state: str = ".criticality/state.json"
    logs: str = ".criticality/logs"
    ledger: str = ".criticality/ledger.json"


@dataclass(frozen=True)
class ThresholdsConfig:
    context_token_upgrade: int = 12000
    signature_complexity_upgrade: int = 5
    max_retry_attempts: int = 3
    retry_base_delay_ms: int = 1000
    performance_variance_threshold: float = 0.2


@dataclass(frozen=True)
class NotificationChannel:
    """A webhook endpoint and the events it subscribes to."""

    endpoint: str
    type: str = "webhook"
    enabled: bool = True
    events: tuple[NotificationEvent, ...] = tuple(NotificationEvent)


@dataclass(frozen=True)
class NotificationConfig:
    enabled: bool = False
    channels: tuple[NotificationChannel, ...] = ()


@dataclass(frozen=True)
class CriticalityConfig:
    """Complete project configuration."""

    models: ModelAssignments = field(default_factory=ModelAssignments)
    paths: PathsConfig = field(default_factory=PathsConfig)
    thresholds: ThresholdsConfig = field(default_factory=ThresholdsConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


def default_config() -> CriticalityConfig:
    return CriticalityConfig()


def _require_http_url(endpoint: str, index: int) -> str:
    """Check a webhook endpoint is an absolute http(s) URL.

    Raises:
        ConfigurationError: If the endpoint is not http or https
    """
    parsed = urlparse(endpoint)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(
            f"notifications.channels[{index}]: endpoint '{endpoint}' "
            "must be an http(s) URL"
        )
    return endpoint


def _build_notifications(data: dict[str, Any]) -> NotificationConfig:
    channels = []
    for i, raw in enumerate(data.get("channels", [])):
        events = raw.get("events")
        channels.append(
            NotificationChannel(
                endpoint=_require_http_url(raw["endpoint"], i),
                type=raw["type"],
                enabled=raw.get("enabled", True),
                events=(
                    tuple(NotificationEvent(e) for e in events)
                    if events is not None
                    else tuple(NotificationEvent)
                ),
            )
        )
    return NotificationConfig(
        enabled=data.get("enabled", False), channels=tuple(channels)
    )


def config_from_dict(data: dict[str, Any]) -> CriticalityConfig:
    """
    Build a configuration from a parsed JSON object.

    Omitted sections and keys take their defaults.

    Raises:
        ConfigurationError: If the data does not match the config schema
    """
    try:
        validate_config(data)
    except jsonschema.ValidationError as e:
        location = ".".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"Invalid configuration at {location}: {e.message}") from e

    return CriticalityConfig(
        models=ModelAssignments(**data.get("models", {})),
        paths=PathsConfig(**data.get("paths", {})),
        thresholds=ThresholdsConfig(**data.get("thresholds", {})),
        escalation=EscalationConfig(**data.get("escalation", {})),
        notifications=_build_notifications(data.get("notifications", {})),
    )


def load_config(path: str | Path) -> CriticalityConfig:
    """
    Load configuration from a JSON file.

    Args:
        path: Path to the configuration file

    Returns:
        Parsed configuration

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected object in {path}, got {type(data).__name__}")

    config = config_from_dict(data)
    logger.debug("Loaded configuration from %s", path)
    return config
