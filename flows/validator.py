"""
Schema Validator — structural validation of values against declared Schemas.

A Schema is compiled once into a pydantic model (strict scalar types,
range and enum constraints, nested models for objects) and cached. Pydantic
already collects every violation rather than stopping at the first one;
this module translates its error list into ValidationIssues with dot-paths
so the orchestrator and the tool registry get complete diagnostics.

Shared by: flow input, tool arguments, tool results and flow output.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Any, Literal, Optional

from pydantic import (
    BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr,
    ValidationError, create_model,
)

from models.schemas import FieldSpec, FieldType, Schema, ValidationIssue
from utils.paths import join_path

# Extra keys are dropped from the validated value, not reported.
_MODEL_CONFIG = ConfigDict(extra="ignore")

_SCALARS: dict[FieldType, Any] = {
    FieldType.STRING: StrictStr,
    FieldType.NUMBER: StrictFloat,
    FieldType.INTEGER: StrictInt,
    FieldType.BOOLEAN: StrictBool,
}


class ValidationResult(BaseModel):
    """Either a validated value or the complete list of violations."""
    value: Any = None
    issues: list[ValidationIssue] = []

    @property
    def ok(self) -> bool:
        return not self.issues


def validate(schema: Schema, value: Any) -> ValidationResult:
    """
    Validate ``value`` against ``schema``.

    Never fails fast: every missing field, wrong type, out-of-range number
    and bad enum member is reported with its path. On success the returned
    value is a plain dict holding only declared fields.
    """
    model = _model_for(schema)
    try:
        validated = model.model_validate(value)
    except ValidationError as exc:
        return ValidationResult(issues=_to_issues(exc))
    return ValidationResult(value=validated.model_dump(by_alias=True, exclude_unset=True))


def _to_issues(exc: ValidationError) -> list[ValidationIssue]:
    issues = []
    for err in exc.errors(include_url=False):
        offending = None if err["type"] == "missing" else err.get("input")
        issues.append(ValidationIssue(
            path=join_path(err["loc"]),
            message=err["msg"],
            value=offending,
        ))
    return issues


# ══════════════════════════════════════════════════════════
#  SCHEMA → PYDANTIC MODEL
# ══════════════════════════════════════════════════════════

@lru_cache(maxsize=None)
def _model_for(schema: Schema) -> type[BaseModel]:
    return _build_model(schema.name or "Value", schema.properties)


def _build_model(model_name: str, properties: tuple[FieldSpec, ...]) -> type[BaseModel]:
    # Python-side names are positional; the declared name is the alias, so
    # any string is usable as a field name.
    definitions = {}
    for index, spec in enumerate(properties):
        definitions[f"f{index}"] = _field_definition(model_name, spec)
    return create_model(model_name, __config__=_MODEL_CONFIG, **definitions)


def _field_definition(model_name: str, spec: FieldSpec) -> tuple[Any, Any]:
    annotation = _constrained(model_name, spec)
    if spec.nullable:
        annotation = Optional[annotation]
    # An absent optional field takes the unvalidated default and is left out
    # of the dump by exclude_unset; an explicit null is still type-checked.
    default = ... if spec.required else None
    return annotation, Field(default, alias=spec.name, description=spec.description or None)


def _constrained(model_name: str, spec: FieldSpec) -> Any:
    annotation = _annotation(model_name, spec)
    constraints = {}
    if spec.minimum is not None:
        constraints["ge"] = spec.minimum
    if spec.maximum is not None:
        constraints["le"] = spec.maximum
    if spec.min_length is not None:
        constraints["min_length"] = spec.min_length
    if constraints:
        return Annotated[annotation, Field(**constraints)]
    return annotation


def _annotation(model_name: str, spec: FieldSpec) -> Any:
    if spec.type in _SCALARS:
        return _SCALARS[spec.type]
    if spec.type == FieldType.ENUM:
        return Literal[spec.choices]
    if spec.type == FieldType.OBJECT:
        return _build_model(f"{model_name}_{spec.name}", spec.properties)
    if spec.type == FieldType.ARRAY:
        return list[_constrained(f"{model_name}_{spec.name}", spec.items)]
    raise ValueError(f"Unsupported field type: {spec.type}")


# ══════════════════════════════════════════════════════════
#  SCHEMA → JSON SCHEMA (model-facing contract)
# ══════════════════════════════════════════════════════════

def to_json_schema(schema: Schema) -> dict[str, Any]:
    """Compact JSON Schema for prompts and vendor tool definitions."""
    out = _object_json_schema(schema.properties)
    if schema.description:
        out["description"] = schema.description
    return out


def field_json_schema(spec: FieldSpec) -> dict[str, Any]:
    if spec.type == FieldType.ENUM:
        out: dict[str, Any] = {"type": "string", "enum": list(spec.choices)}
    elif spec.type == FieldType.OBJECT:
        out = _object_json_schema(spec.properties)
    elif spec.type == FieldType.ARRAY:
        out = {"type": "array", "items": field_json_schema(spec.items)}
    else:
        out = {"type": spec.type.value}
        if spec.minimum is not None:
            out["minimum"] = spec.minimum
        if spec.maximum is not None:
            out["maximum"] = spec.maximum
        if spec.min_length is not None:
            out["minLength"] = spec.min_length
    if spec.nullable:
        out = {"anyOf": [out, {"type": "null"}]}
    if spec.description:
        out["description"] = spec.description
    return out


def _object_json_schema(properties: tuple[FieldSpec, ...]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {p.name: field_json_schema(p) for p in properties},
        "required": [p.name for p in properties if p.required],
    }
