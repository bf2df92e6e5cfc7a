"""
Flow Models — definitions built at startup and records kept per invocation.

A FlowDefinition is a typed contract: an input Schema, an output Schema,
the prompt that turns one into the other, and the tools the model may
call along the way. Definitions are frozen once built.

A FlowRun is the mutable scratchpad of one invocation — state trail,
conversation history, tool records, counters. It never outlives the
invocation that created it.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.schemas import FlowState, Message, Schema, ToolCallRecord
from flows.tool_registry import ToolDescriptor


# ──────────────────────────────────────────────────────────────
#  Prompt Template
# ──────────────────────────────────────────────────────────────

class PromptTemplate(BaseModel):
    """
    Static prompt text with placeholders bound to dot-paths in the flow input.

    Placeholders:
      {{startLocation.lat}}          value at the path (mappings/lists as JSON)
      {{{startLocation.lat}}}        same, triple-brace form
      {{#if timeOfDay}} … {{/if}}    section kept only when the path is truthy
    """
    model_config = ConfigDict(frozen=True)

    name: str
    text: str


# ──────────────────────────────────────────────────────────────
#  Flow Definition
# ──────────────────────────────────────────────────────────────

class FlowDefinition(BaseModel):
    """
    A complete input → output orchestration unit.

    Example:
        optimizeRouteFlow:
          input:  startLocation, endLocation, currentTrafficConditions
          tools:  getWeatherConditions
          output: optimalRoute, estimatedArrivalTime, weatherConditions
    """
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    input_schema: Schema
    output_schema: Schema
    prompt: PromptTemplate
    tools: tuple[ToolDescriptor, ...] = ()

    @property
    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]

    def allows_tool(self, name: str) -> bool:
        return any(t.name == name for t in self.tools)


# ──────────────────────────────────────────────────────────────
#  Per-invocation records
# ──────────────────────────────────────────────────────────────

class FlowRun(BaseModel):
    """Mutable state of one invocation. Discarded when the invocation ends."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    flow_name: str
    state: FlowState = FlowState.INIT
    states: list[FlowState] = [FlowState.INIT]            # full trail, for diagnostics
    history: list[Message] = []
    tool_calls: list[ToolCallRecord] = []
    model_turns: int = 0
    tool_failures: int = 0
    repair_attempts: int = 0
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def transition(self, state: FlowState):
        self.state = state
        self.states.append(state)


class FlowRunResult(BaseModel):
    """Successful outcome of an invocation, with its diagnostics."""
    flow_name: str
    run_id: str
    output: dict[str, Any]
    states: list[FlowState] = []
    tool_calls: list[ToolCallRecord] = []
    model_turns: int = 0
    repair_attempts: int = 0
    started_at: datetime
    completed_at: Optional[datetime] = None
