"""Structural validation of capability payloads.

Capability input and output schemas are JSON Schema documents. Schemas
without a ``$schema`` keyword are checked as Draft 2020-12. Compiled
validators are cached per canonical schema key.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping, Optional

import jsonschema
from jsonschema.protocols import Validator
from jsonschema.validators import Draft202012Validator, validator_for

from tessera.errors import SchemaViolation

# Errors reported per payload before the detail is truncated
MAX_REPORTED_ERRORS = 5


@dataclass(frozen=True, slots=True)
class ValidationOutcome:
    """Result of validating a payload against a schema."""

    ok: bool
    detail: Optional[str] = None

    def raise_for_violation(self) -> None:
        if not self.ok:
            raise SchemaViolation(self.detail or "schema violation")


def schema_key(schema: Mapping[str, Any]) -> str:
    """Stable cache key for a schema mapping."""
    return json.dumps(schema, sort_keys=True, separators=(",", ":"), default=str)


@lru_cache(maxsize=512)
def _validator_for(key: str) -> Validator:
    schema = json.loads(key)
    cls = validator_for(schema, default=Draft202012Validator)
    cls.check_schema(schema)
    return cls(schema)


def check_schema(schema: Mapping[str, Any], *, name: str = "schema") -> None:
    """
    Reject malformed schemas up front.

    Raises:
        ValueError: If ``schema`` is not a valid JSON Schema document
    """
    if not schema:
        return
    try:
        _validator_for(schema_key(schema))
    except jsonschema.SchemaError as exc:
        raise ValueError(f"{name} is not a valid JSON Schema: {exc.message}") from exc


def _describe(error: jsonschema.ValidationError) -> str:
    location = ".".join(str(item) for item in error.absolute_path)
    return f"{location}: {error.message}" if location else error.message


def validate_payload(
    schema: Mapping[str, Any],
    payload: Any,
    *,
    name: str = "payload",
) -> ValidationOutcome:
    """Validate ``payload`` against ``schema``; empty schemas accept anything."""
    if not schema:
        return ValidationOutcome(ok=True)

    try:
        validator = _validator_for(schema_key(schema))
    except jsonschema.SchemaError as exc:
        return ValidationOutcome(ok=False, detail=f"{name} schema is invalid: {exc.message}")

    errors = sorted(
        validator.iter_errors(payload),
        key=lambda err: [str(item) for item in err.absolute_path],
    )
    if not errors:
        return ValidationOutcome(ok=True)

    parts = [_describe(error) for error in errors[:MAX_REPORTED_ERRORS]]
    if len(errors) > MAX_REPORTED_ERRORS:
        parts.append(f"... {len(errors) - MAX_REPORTED_ERRORS} more")
    return ValidationOutcome(ok=False, detail="; ".join(parts))


__all__ = ["ValidationOutcome", "check_schema", "schema_key", "validate_payload"]
