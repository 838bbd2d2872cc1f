from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from jsonschema import Draft202012Validator

from dealflow.utils.error_taxonomy import ValidationError

PRIMARY_TEXT_FIELD = "memo_markdown"
TEXT_FIELDS: tuple[str, ...] = ("company_name", "sector", "solution_summary")
NUMERIC_FIELDS: tuple[str, ...] = (
    "amount_raised_cents",
    "pre_money_valuation_cents",
    "current_arr_cents",
    "yoy_growth_percent",
    "mom_growth_percent",
)
NULL_LIKE_STRINGS = frozenset({"", "null", "none", "undefined", "n/a", "nan"})
THOUSANDS_GROUPED = re.compile(r"^[+-]?\d{1,3}(,\d{3})+(\.\d+)?$")

PartialReason = Literal["max_iterations", "time_budget"]


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    schema_errors: list[str]
    invariant_errors: list[str]

    @property
    def errors(self) -> list[str]:
        return self.schema_errors + self.invariant_errors


@dataclass(frozen=True, slots=True)
class StructuredResult:
    primary_text: str
    company_name: str | None = None
    sector: str | None = None
    solution_summary: str | None = None
    amount_raised_cents: float | None = None
    pre_money_valuation_cents: float | None = None
    current_arr_cents: float | None = None
    yoy_growth_percent: float | None = None
    mom_growth_percent: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return False

    def subject_fields(self) -> dict[str, Any]:
        values = {name: getattr(self, name) for name in TEXT_FIELDS + NUMERIC_FIELDS}
        return {name: value for name, value in values.items() if value is not None}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "primary_text": self.primary_text,
            "is_partial": self.is_partial,
        }
        for name in TEXT_FIELDS + NUMERIC_FIELDS:
            payload[name] = getattr(self, name)
        payload["metadata"] = dict(self.metadata)
        return payload


@dataclass(frozen=True, slots=True)
class PartialResult(StructuredResult):
    partial_reason: PartialReason = "max_iterations"

    @property
    def is_partial(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        payload = StructuredResult.to_dict(self)
        payload["partial_reason"] = self.partial_reason
        return payload


def sanitize_numeric_value(value: Any) -> Any:
    """Map null-like strings to None and numeric strings to float.

    Anything else is returned unchanged so schema validation can reject it.
    """
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return value
    if not isinstance(value, str):
        return value

    text = value.strip()
    if text.lower() in NULL_LIKE_STRINGS:
        return None

    candidate = text.replace(" ", "").rstrip("%")
    if "," in candidate:
        # decimal commas stay strings so validation rejects them
        if not THOUSANDS_GROUPED.match(candidate):
            return value
        candidate = candidate.replace(",", "")
    try:
        parsed = float(candidate)
    except ValueError:
        return value
    if not math.isfinite(parsed):
        return None
    return parsed


def normalize_result_payload(payload: dict[str, Any]) -> dict[str, Any]:
    normalized = dict(payload)
    for name in NUMERIC_FIELDS:
        if name in normalized:
            normalized[name] = sanitize_numeric_value(normalized[name])
    for name in TEXT_FIELDS:
        value = normalized.get(name)
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.lower() in NULL_LIKE_STRINGS - {""}:
                normalized[name] = None
            else:
                normalized[name] = stripped
    return normalized


def validate_output(
    *,
    parsed_json: dict[str, Any],
    schema: dict[str, Any],
    min_primary_text_length: int = 1,
) -> ValidationResult:
    schema_errors = validate_schema(parsed_json=parsed_json, schema=schema)
    invariant_errors = _validate_invariants(
        parsed_json=parsed_json,
        min_primary_text_length=min_primary_text_length,
    )

    return ValidationResult(
        valid=not schema_errors and not invariant_errors,
        schema_errors=schema_errors,
        invariant_errors=invariant_errors,
    )


def build_structured_result(
    *,
    payload: dict[str, Any],
    schema: dict[str, Any],
    min_primary_text_length: int,
    metadata: dict[str, Any] | None = None,
) -> StructuredResult:
    """Normalize and validate an emit_result payload.

    Raises ValidationError listing every schema and invariant problem.
    """
    normalized = normalize_result_payload(payload)
    validation = validate_output(
        parsed_json=normalized,
        schema=schema,
        min_primary_text_length=min_primary_text_length,
    )
    if not validation.valid:
        raise ValidationError(
            "Result payload failed validation: " + "; ".join(validation.errors),
            errors=validation.errors,
        )

    return StructuredResult(
        primary_text=str(normalized[PRIMARY_TEXT_FIELD]).strip(),
        metadata=dict(metadata or {}),
        **_typed_fields(normalized),
    )


def build_partial_result(
    *,
    primary_text: str,
    reason: PartialReason,
    known_fields: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> PartialResult:
    text = primary_text.strip()
    if not text:
        raise ValidationError("Partial result requires non-empty primary text")

    normalized = normalize_result_payload(dict(known_fields or {}))
    fields = {
        name: value
        for name, value in _typed_fields(normalized).items()
        if _has_expected_type(name, value)
    }
    return PartialResult(
        primary_text=text,
        partial_reason=reason,
        metadata=dict(metadata or {}),
        **fields,
    )


def revalidate_result(
    result: StructuredResult,
    *,
    min_primary_text_length: int,
) -> ValidationResult:
    """Shape check applied right before a result is persisted."""
    invariant_errors: list[str] = []
    minimum = 1 if result.is_partial else min_primary_text_length
    if len(result.primary_text.strip()) < minimum:
        invariant_errors.append(
            f"primary text must be at least {minimum} characters"
        )
    for name in TEXT_FIELDS + NUMERIC_FIELDS:
        value = getattr(result, name)
        if not _has_expected_type(name, value):
            invariant_errors.append(f"{name} has invalid type {type(value).__name__}")

    return ValidationResult(
        valid=not invariant_errors,
        schema_errors=[],
        invariant_errors=invariant_errors,
    )


def _typed_fields(normalized: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for name in TEXT_FIELDS:
        value = normalized.get(name)
        fields[name] = value if isinstance(value, str) and value else None
    for name in NUMERIC_FIELDS:
        value = normalized.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            fields[name] = float(value)
        else:
            fields[name] = None
    return fields


def _has_expected_type(name: str, value: Any) -> bool:
    if value is None:
        return True
    if name in NUMERIC_FIELDS:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, str)


def validate_schema(
    *, parsed_json: dict[str, Any], schema: dict[str, Any]
) -> list[str]:
    validator = Draft202012Validator(schema)
    errors = sorted(
        validator.iter_errors(parsed_json), key=lambda item: list(item.path)
    )

    messages: list[str] = []
    for error in errors:
        path = "/".join(str(item) for item in error.path)
        if path:
            messages.append(f"{path}: {error.message}")
        else:
            messages.append(error.message)

    return messages


def _validate_invariants(
    *, parsed_json: dict[str, Any], min_primary_text_length: int
) -> list[str]:
    errors: list[str] = []

    primary_text = parsed_json.get(PRIMARY_TEXT_FIELD)
    if not isinstance(primary_text, str) or not primary_text.strip():
        errors.append(f"{PRIMARY_TEXT_FIELD} must be a non-empty string")
    elif len(primary_text.strip()) < min_primary_text_length:
        errors.append(
            f"{PRIMARY_TEXT_FIELD} must be at least {min_primary_text_length} "
            f"characters, got {len(primary_text.strip())}"
        )

    for name in NUMERIC_FIELDS:
        value = parsed_json.get(name)
        if isinstance(value, str):
            errors.append(f"{name} must be a number or null, got string {value!r}")

    return errors
