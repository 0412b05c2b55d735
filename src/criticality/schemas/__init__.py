"""Criticality JSON Schema definitions and validation utilities.

Schemas:
    - state.schema.json: Persisted protocol state snapshot
    - config.schema.json: Project configuration (models, paths, thresholds,
      escalation limits, notification channels)

Usage:
    from criticality.schemas import validate_config

    with open("criticality.json") as f:
        data = json.load(f)
    validate_config(data)  # Raises jsonschema.ValidationError if invalid
"""

from __future__ import annotations

import json
from functools import cache
from importlib.resources import files
from typing import Any

import jsonschema


@cache
def _load_schema(name: str) -> dict[str, Any]:
    """Load a JSON schema from the schemas package.

    Args:
        name: Schema filename (e.g., 'state.schema.json')

    Returns:
        Parsed JSON schema as a dictionary
    """
    schema_text = files("criticality.schemas").joinpath(name).read_text()
    result: dict[str, Any] = json.loads(schema_text)
    return result


def get_state_schema() -> dict[str, Any]:
    return _load_schema("state.schema.json")


def get_config_schema() -> dict[str, Any]:
    return _load_schema("config.schema.json")


def validate_state_document(data: dict[str, Any]) -> None:
    """Validate a persisted state document against the schema.

    Args:
        data: Parsed state file contents

    Raises:
        jsonschema.ValidationError: If validation fails
    """
    jsonschema.validate(data, get_state_schema())


def validate_config(data: dict[str, Any]) -> None:
    """Validate a configuration dictionary against the schema.

    Raises:
        jsonschema.ValidationError: If validation fails
    """
    jsonschema.validate(data, get_config_schema())


__all__ = [
    "get_state_schema",
    "get_config_schema",
    "validate_state_document",
    "validate_config",
]
