"""
Flow Registry — Validates and indexes flow definitions by name.

Flows are registered once at startup. Registration checks that:
  1. Every placeholder in the prompt names a declared input field
  2. Tool names are unique within the flow
  3. Tools shared between flows are the same descriptor

Tools named by a flow are registered into the shared ToolRegistry as a
side effect, so the orchestrator has one closed catalog to consult.
After ``seal()`` both registries are read-only.
"""
from __future__ import annotations

import structlog
from typing import Optional

from flows.models import FlowDefinition
from flows.prompt import placeholder_paths
from flows.tool_registry import ToolRegistry

logger = structlog.get_logger()


class FlowRegistry:
    """Central registry for all flow definitions."""

    def __init__(self, tool_registry: ToolRegistry = None):
        self._flows: dict[str, FlowDefinition] = {}
        self.tools = tool_registry or ToolRegistry()
        self._sealed = False

    # ── Registration ──────────────────────────────────

    def register(self, flow: FlowDefinition):
        """Register a single flow definition."""
        if self._sealed:
            raise RuntimeError(f"Flow registry is sealed; cannot register '{flow.name}'")
        errors = self._validate(flow)
        if errors:
            logger.error("invalid_flow_definition", flow=flow.name, errors=errors)
            raise ValueError(f"Invalid flow '{flow.name}': {'; '.join(errors)}")

        for tool in flow.tools:
            if self.tools.get(tool.name) is None:
                self.tools.register(tool)

        self._flows[flow.name] = flow
        logger.info("flow_registered",
                    flow=flow.name,
                    tools=flow.tool_names,
                    input_fields=len(flow.input_schema.properties),
                    output_fields=len(flow.output_schema.properties))

    def seal(self):
        """Freeze the registry (and its tool registry) for concurrent use."""
        self._sealed = True
        self.tools.seal()

    # ── Lookup ────────────────────────────────────────

    def get(self, name: str) -> Optional[FlowDefinition]:
        return self._flows.get(name)

    def list_all(self) -> list[FlowDefinition]:
        return list(self._flows.values())

    @property
    def count(self) -> int:
        return len(self._flows)

    # ── Validation ────────────────────────────────────

    def _validate(self, flow: FlowDefinition) -> list[str]:
        errors = []
        if flow.name in self._flows:
            errors.append(f"Duplicate flow name: {flow.name}")

        for path in placeholder_paths(flow.prompt):
            if not flow.input_schema.has_path(path):
                errors.append(f"Prompt placeholder '{path}' is not a declared input field")

        seen = set()
        for tool in flow.tools:
            if tool.name in seen:
                errors.append(f"Tool '{tool.name}' listed twice")
            seen.add(tool.name)
            existing = self.tools.get(tool.name)
            if existing is not None and existing != tool:
                errors.append(f"Tool '{tool.name}' conflicts with an already registered tool")
        return errors
