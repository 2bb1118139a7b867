"""
Declarative provider configuration schemas.

A plugin describes its settings as a mapping of field name to `ConfigField`;
the same description validates submitted values and renders settings forms.
"""

from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel

from spark.kernel.errors import ValidationError

FieldType = Literal["string", "integer", "boolean", "array", "select", "time_list"]


class ConfigField(BaseModel):
    type: FieldType = "string"
    label: str
    description: str | None = None
    required: bool = False
    min: int | None = None
    max: int | None = None
    options: dict[str, str] | None = None
    default: Any = None


ConfigurationSchema = Mapping[str, ConfigField]

# Fields every schedulable instance understands.
SCHEDULING_FIELDS: dict[str, ConfigField] = {
    "update_frequency_minutes": ConfigField(
        type="integer",
        label="Update Frequency (minutes)",
        description="How often to fetch new data",
        required=True,
        min=1,
        default=15,
    ),
    "paused": ConfigField(type="boolean", label="Paused", default=False),
    "use_schedule": ConfigField(type="boolean", label="Use fixed schedule times", default=False),
    "schedule_times": ConfigField(type="time_list", label="Schedule times (HH:MM)", default=[]),
    "schedule_timezone": ConfigField(type="string", label="Schedule timezone", default="UTC"),
}


def _coerce(name: str, spec: ConfigField, value: Any) -> tuple[Any, str | None]:
    if spec.type == "integer":
        try:
            number = int(value)
        except (TypeError, ValueError):
            return None, f"{name} must be an integer"
        if spec.min is not None and number < spec.min:
            return None, f"{name} must be at least {spec.min}"
        if spec.max is not None and number > spec.max:
            return None, f"{name} must be at most {spec.max}"
        return number, None

    if spec.type == "boolean":
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}, None
        return bool(value), None

    if spec.type in ("array", "time_list"):
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        if not isinstance(value, list):
            return None, f"{name} must be a list"
        if spec.options is not None:
            unknown = [item for item in value if item not in spec.options]
            if unknown:
                return None, f"{name} has unknown options: {', '.join(map(str, unknown))}"
        if spec.type == "time_list":
            bad = [item for item in value if not _valid_time(item)]
            if bad:
                return None, f"{name} entries must be HH:MM"
        return value, None

    if spec.type == "select":
        if spec.options is not None and value not in spec.options:
            return None, f"{name} must be one of: {', '.join(spec.options)}"
        return value, None

    return str(value), None


def _valid_time(value: Any) -> bool:
    if not isinstance(value, str) or len(value) != 5 or value[2] != ":":
        return False
    hour, minute = value[:2], value[3:]
    return hour.isdigit() and minute.isdigit() and int(hour) < 24 and int(minute) < 60


def validate_configuration(schema: ConfigurationSchema, values: Mapping[str, Any]) -> dict[str, Any]:
    """
    Coerce `values` against `schema`.

    Unknown keys pass through untouched; missing optional fields take their
    default. Raises `ValidationError` listing every failing field.
    """
    result: dict[str, Any] = dict(values)
    errors: dict[str, str] = {}

    for name, spec in schema.items():
        raw = values.get(name)
        if raw is None or raw == "":
            if spec.required and spec.default is None:
                errors[name] = f"{name} is required"
            elif spec.default is not None:
                result[name] = spec.default
            continue
        coerced, error = _coerce(name, spec, raw)
        if error:
            errors[name] = error
        else:
            result[name] = coerced

    if errors:
        raise ValidationError(
            message="Invalid integration configuration",
            code="integration.configuration_invalid",
            meta={"errors": errors},
        )
    return result


def schema_defaults(schema: ConfigurationSchema) -> dict[str, Any]:
    return {name: spec.default for name, spec in schema.items() if spec.default is not None}


def with_scheduling(fields: dict[str, ConfigField]) -> dict[str, ConfigField]:
    return {**fields, **{k: v for k, v in SCHEDULING_FIELDS.items() if k not in fields}}


__all__ = [
    "ConfigField",
    "ConfigurationSchema",
    "SCHEDULING_FIELDS",
    "schema_defaults",
    "validate_configuration",
    "with_scheduling",
]
