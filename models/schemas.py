"""
Core data models for the SwiftDispatch flow system.
These are the universal types shared across all modules.

Schemas are declarative: a Schema is a named list of FieldSpecs, each
carrying a type tag, a required flag and a description. The same
description is used twice — once to validate values, once to tell the
model what shape it is expected to produce.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ENUM = "enum"
    OBJECT = "object"
    ARRAY = "array"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FlowState(str, Enum):
    """Lifecycle of a single flow invocation."""
    INIT = "init"
    VALIDATING_INPUT = "validating_input"
    PROMPTING = "prompting"
    AWAITING_MODEL = "awaiting_model"
    TOOL_CALL = "tool_call"
    EXECUTING_TOOL = "executing_tool"
    VALIDATING_OUTPUT = "validating_output"
    DONE = "done"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Schema — declarative value shapes
# ──────────────────────────────────────────────────────────────

class FieldSpec(BaseModel):
    """One named field of a schema."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: FieldType
    description: str = ""                          # also surfaced to the model
    required: bool = True
    nullable: bool = False                         # accept an explicit null

    minimum: Optional[float] = None                # number / integer
    maximum: Optional[float] = None
    min_length: Optional[int] = None               # string
    choices: tuple[str, ...] = ()                  # enum
    properties: tuple[FieldSpec, ...] = ()         # object
    items: Optional[FieldSpec] = None              # array element spec

    @model_validator(mode="after")
    def _check_shape(self) -> FieldSpec:
        if self.type == FieldType.ENUM and not self.choices:
            raise ValueError(f"enum field '{self.name}' needs at least one choice")
        if self.type == FieldType.ARRAY and self.items is None:
            raise ValueError(f"array field '{self.name}' needs an items spec")
        return self

    def child(self, name: str) -> Optional[FieldSpec]:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None


class Schema(BaseModel):
    """
    Immutable description of an object value.

    Example:
        Schema(name="Location", properties=(
            number_field("lat", "Latitude", minimum=-90, maximum=90),
            number_field("lng", "Longitude", minimum=-180, maximum=180),
        ))
    """
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    properties: tuple[FieldSpec, ...] = ()

    def field(self, name: str) -> Optional[FieldSpec]:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def has_path(self, path: str) -> bool:
        """True if a dot-path (e.g. 'startLocation.lat') names a declared field."""
        parts = path.split(".")
        spec = self.field(parts[0])
        for part in parts[1:]:
            if spec is None:
                return False
            if spec.type == FieldType.ARRAY and part.isdigit():
                spec = spec.items
            else:
                spec = spec.child(part)
        return spec is not None

    @property
    def required_names(self) -> list[str]:
        return [p.name for p in self.properties if p.required]


# ── Builders ──────────────────────────────────────────────────

def string_field(
    name: str,
    description: str = "",
    required: bool = True,
    min_length: int = None,
) -> FieldSpec:
    return FieldSpec(
        name=name, type=FieldType.STRING, description=description,
        required=required, min_length=min_length,
    )


def number_field(
    name: str,
    description: str = "",
    required: bool = True,
    minimum: float = None,
    maximum: float = None,
) -> FieldSpec:
    return FieldSpec(
        name=name, type=FieldType.NUMBER, description=description,
        required=required, minimum=minimum, maximum=maximum,
    )


def integer_field(
    name: str,
    description: str = "",
    required: bool = True,
    minimum: float = None,
    maximum: float = None,
) -> FieldSpec:
    return FieldSpec(
        name=name, type=FieldType.INTEGER, description=description,
        required=required, minimum=minimum, maximum=maximum,
    )


def boolean_field(name: str, description: str = "", required: bool = True) -> FieldSpec:
    return FieldSpec(name=name, type=FieldType.BOOLEAN, description=description, required=required)


def enum_field(
    name: str,
    choices: list[str],
    description: str = "",
    required: bool = True,
) -> FieldSpec:
    return FieldSpec(
        name=name, type=FieldType.ENUM, description=description,
        required=required, choices=tuple(choices),
    )


def object_field(
    name: str,
    properties: list[FieldSpec],
    description: str = "",
    required: bool = True,
) -> FieldSpec:
    return FieldSpec(
        name=name, type=FieldType.OBJECT, description=description,
        required=required, properties=tuple(properties),
    )


def array_field(
    name: str,
    items: FieldSpec,
    description: str = "",
    required: bool = True,
) -> FieldSpec:
    return FieldSpec(
        name=name, type=FieldType.ARRAY, description=description,
        required=required, items=items,
    )


class ValidationIssue(BaseModel):
    """One violation found while validating a value against a Schema."""
    path: str                                      # dot-joined, "<root>" for the value itself
    message: str
    value: Any = None                              # offending value, when there is one

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


# ──────────────────────────────────────────────────────────────
#  Model conversation — requests, responses, history
# ──────────────────────────────────────────────────────────────

def _call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class ToolCall(BaseModel):
    """The model asks for a tool to be run."""
    kind: Literal["tool_call"] = "tool_call"
    id: str = Field(default_factory=_call_id)
    name: str
    arguments: Any = Field(default_factory=dict)   # unvalidated, straight from the model


class Final(BaseModel):
    """The model's final answer — text or an already-structured mapping."""
    kind: Literal["final"] = "final"
    raw_output: Any = None


ModelResponse = Union[ToolCall, Final]


class Message(BaseModel):
    """One entry of the per-invocation conversation history."""
    role: MessageRole
    content: str = ""
    tool_call: Optional[ToolCall] = None           # assistant turn that requested a tool
    tool_call_id: str = ""                         # tool turn answering a request
    tool_name: str = ""
    is_error: bool = False


class ToolCallRecord(BaseModel):
    """Outcome of one tool execution. Lives only as long as its invocation."""
    tool_name: str
    arguments: Any = None
    result: Optional[dict[str, Any]] = None
    error: str = ""
    error_kind: str = ""                           # ToolArgumentError | ToolHandlerError | ...
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.error_kind
