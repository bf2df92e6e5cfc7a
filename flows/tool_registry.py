"""
Tool Registry — Closed catalog of capabilities a flow may expose to the model.

Every tool has:
  - A unique name and a description (for the model to understand purpose)
  - An input Schema (arguments are validated before the handler runs)
  - An output Schema (results are validated before the model sees them)
  - An async handler owned by an external collaborator
  - A timeout and an idempotency hint

The registry is built once at startup and sealed; after that it is only
read, so concurrent invocations can share it without locking.

The orchestrator uses the registry to:
  - Reject tool names the model invents
  - Run a tool call end to end: validate → execute → validate
  - Build the tool catalogue that goes into prompts and vendor requests
"""
from __future__ import annotations

import asyncio
import copy
import time
import structlog
from typing import Any, Awaitable, Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.schemas import Schema, ToolCallRecord
from flows.errors import (
    FlowTimeoutError, ToolArgumentError, ToolHandlerError, ToolOutputError,
    UnknownToolError,
)
from flows.validator import to_json_schema, validate

logger = structlog.get_logger()

ToolHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class ToolDescriptor(BaseModel):
    """Describes one callable tool. The descriptor is all the orchestrator trusts."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str                                             # Unique identifier
    description: str                                      # What the tool does (for the model)
    input_schema: Schema
    output_schema: Schema
    handler: ToolHandler = Field(exclude=True, repr=False)

    timeout_seconds: Optional[float] = None               # None = registry default
    is_idempotent: bool = True                            # Safe to retry?

    def catalogue_entry(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": to_json_schema(self.input_schema),
        }


class ToolRegistry:
    """
    Central catalog of all tools available to flows.

    Used by:
    - FlowRegistry: to check that a flow only names registered tools
    - FlowOrchestrator: to execute tool calls requested by the model
    - Prompt compiler / model clients: to describe capabilities
    """

    def __init__(self, default_timeout_seconds: float = 10.0):
        self._tools: dict[str, ToolDescriptor] = {}
        self._sealed = False
        self.default_timeout_seconds = default_timeout_seconds

    # ── Registration ──────────────────────────────────

    def register(self, descriptor: ToolDescriptor):
        """Register a tool. Names are unique; the registry is closed once sealed."""
        if self._sealed:
            raise RuntimeError(f"Tool registry is sealed; cannot register '{descriptor.name}'")
        if descriptor.name in self._tools:
            raise ValueError(f"Duplicate tool name: {descriptor.name}")
        self._tools[descriptor.name] = descriptor
        logger.info("tool_registered",
                    name=descriptor.name,
                    idempotent=descriptor.is_idempotent)

    def seal(self):
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    # ── Lookup ────────────────────────────────────────

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def list_all(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    @property
    def count(self) -> int:
        return len(self._tools)

    def catalogue(self, names: Iterable[str] = None) -> list[dict[str, Any]]:
        """JSON-ready catalogue (name, description, input schema) of the given tools."""
        selected = self._select(names)
        return [t.catalogue_entry() for t in selected]

    def describe_for_llm(self, names: Iterable[str] = None) -> str:
        """
        Build a human-readable description of available tools
        for inclusion in logs and debugging output.
        """
        tools = self._select(names)
        if not tools:
            return "No tools available."

        lines = ["Available tools:"]
        for t in tools:
            params = ", ".join(
                f"{p.name}: {p.type.value}" for p in t.input_schema.properties
            )
            outputs = ", ".join(p.name for p in t.output_schema.properties)
            lines.append(f"  • {t.name}({params}) → {outputs}")
            lines.append(f"    {t.description}")
        return "\n".join(lines)

    def _select(self, names: Iterable[str] = None) -> list[ToolDescriptor]:
        if names is None:
            return self.list_all()
        return [self._tools[n] for n in names if n in self._tools]

    # ── Execution ─────────────────────────────────────

    async def invoke(self, name: str, raw_args: Any) -> ToolCallRecord:
        """
        Run one tool call end to end.

        1. Look up the descriptor          → UnknownToolError
        2. Validate raw_args               → ToolArgumentError
        3. Await the handler with timeout  → FlowTimeoutError / ToolHandlerError
        4. Validate the handler's result   → ToolOutputError

        Returns a ToolCallRecord holding the validated result.
        """
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise UnknownToolError(name, self.names())

        args = validate(descriptor.input_schema, raw_args)
        if not args.ok:
            raise ToolArgumentError(name, args.issues, raw_args)

        timeout = descriptor.timeout_seconds or self.default_timeout_seconds
        started = time.monotonic()
        # Handlers get their own copy; nothing they do leaks back into the run.
        try:
            task = asyncio.ensure_future(descriptor.handler(copy.deepcopy(args.value)))
        except Exception as e:
            raise ToolHandlerError(name, e) from e
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not done:
            # Only our own deadline is a timeout; a TimeoutError raised by the
            # handler is an ordinary handler failure.
            task.cancel()
            logger.warning("tool_timed_out", tool=name, timeout_seconds=timeout)
            raise FlowTimeoutError("tool_call", timeout, tool_name=name)
        try:
            result = task.result()
        except Exception as e:
            raise ToolHandlerError(name, e) from e
        duration_ms = (time.monotonic() - started) * 1000

        checked = validate(descriptor.output_schema, result)
        if not checked.ok:
            raise ToolOutputError(name, checked.issues, result)

        logger.info("tool_invoked", tool=name, duration_ms=round(duration_ms, 1))
        return ToolCallRecord(
            tool_name=name,
            arguments=args.value,
            result=checked.value,
            duration_ms=duration_ms,
        )
