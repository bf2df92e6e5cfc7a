"""
Flow Orchestrator — The state machine behind every flow invocation.

Architecture:
  invoke(flow_name, input)
    → VALIDATING_INPUT   validate input; failure never reaches the model
    → PROMPTING          compile prompt + tool catalogue + output contract
    → AWAITING_MODEL ⇄ (TOOL_CALL → EXECUTING_TOOL)
                         bounded loop; tool failures are fed back to the
                         model until the failure bound is reached
    → VALIDATING_OUTPUT  parse + validate; one repair round at most
    → DONE | FAILED

The backend is unreliable: it may omit fields, invent tools or loop.
Every loop here is counted, every wait is timed, and the caller receives
either a value that validated against the output schema or a FlowError.

Concurrent invocations share only the sealed flow and tool registries;
everything mutable lives in the per-invocation FlowRun.
"""
from __future__ import annotations

import asyncio
import json
import time
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from config.settings import FlowConfig, Settings, get_settings
from models.schemas import (
    Final, FlowState, Message, MessageRole, ModelResponse, ToolCall,
    ToolCallRecord, ValidationIssue,
)
from core.engine import ModelClient, create_model_client
from backend.weather import WeatherService, create_weather_service
from flows.catalog import create_default_flow_registry
from flows.errors import (
    FlowCancelledError, FlowError, FlowTimeoutError, InputValidationError,
    ModelTurnLimitError, OutputValidationError, ToolArgumentError,
    ToolExhaustedError, ToolHandlerError, ToolOutputError, UnknownFlowError,
    UnknownToolError,
)
from flows.models import FlowDefinition, FlowRun, FlowRunResult
from flows.prompt import compile_prompt, compile_repair_prompt
from flows.registry import FlowRegistry
from flows.validator import validate

logger = structlog.get_logger()

# Failures fed back to the model as tool errors; anything else aborts.
RETRYABLE_TOOL_ERRORS = (ToolArgumentError, ToolHandlerError, ToolOutputError)


class FlowOrchestrator:
    """
    Runs flow definitions against a model client.

    The client is constructed once at startup and passed in; there is no
    process-wide model configuration hidden behind the orchestrator.
    """

    def __init__(
        self,
        client: ModelClient,
        flows: FlowRegistry,
        config: FlowConfig = None,
    ):
        self.client = client
        self.flows = flows
        self.tools = flows.tools
        self.config = config or get_settings().flow

    # ══════════════════════════════════════════════════════════
    #  PUBLIC API
    # ══════════════════════════════════════════════════════════

    async def invoke(self, flow_name: str, input_value: Any) -> dict[str, Any]:
        """Run a flow and return its validated output, or raise a FlowError."""
        result = await self.run(flow_name, input_value)
        return result.output

    async def run(self, flow_name: str, input_value: Any) -> FlowRunResult:
        """Same as invoke(), but also returns the run's diagnostics."""
        flow = self.flows.get(flow_name)
        if flow is None:
            raise UnknownFlowError(flow_name)

        run = FlowRun(flow_name=flow.name)
        log = logger.bind(flow=flow.name, run_id=run.id)
        log.info("flow_invocation_started")

        try:
            output = await asyncio.wait_for(
                self._execute(flow, input_value, run, log),
                timeout=self.config.flow_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise self._fail(run, FlowTimeoutError("flow", self.config.flow_timeout_seconds), log) from None
        except asyncio.CancelledError:
            raise self._fail(run, FlowCancelledError(run.state.value), log) from None
        except FlowError as e:
            raise self._fail(run, e, log)

        log.info("flow_completed",
                 model_turns=run.model_turns,
                 tool_calls=len(run.tool_calls),
                 repairs=run.repair_attempts)
        return FlowRunResult(
            flow_name=flow.name,
            run_id=run.id,
            output=output,
            states=list(run.states),
            tool_calls=list(run.tool_calls),
            model_turns=run.model_turns,
            repair_attempts=run.repair_attempts,
            started_at=run.started_at,
            completed_at=datetime.now(timezone.utc),
        )

    # ══════════════════════════════════════════════════════════
    #  STATE MACHINE
    # ══════════════════════════════════════════════════════════

    async def _execute(self, flow: FlowDefinition, input_value: Any, run: FlowRun, log) -> dict[str, Any]:
        # 1. Input
        self._transition(run, FlowState.VALIDATING_INPUT, log)
        checked = validate(flow.input_schema, input_value)
        if not checked.ok:
            raise InputValidationError(checked.issues)

        # 2. Prompt
        self._transition(run, FlowState.PROMPTING, log)
        prompt = self._compile(flow, checked.value)
        tools = list(flow.tools)

        # 3. Model loop
        while True:
            if run.model_turns >= self.config.max_model_turns:
                raise ModelTurnLimitError(run.model_turns)

            self._transition(run, FlowState.AWAITING_MODEL, log)
            response = await self._call_model(prompt, tools, run)
            run.model_turns += 1

            if isinstance(response, ToolCall):
                await self._handle_tool_call(flow, response, run, log)
                continue

            # 4. Output
            self._transition(run, FlowState.VALIDATING_OUTPUT, log)
            output, issues = self._parse_output(flow, response)
            if not issues:
                self._transition(run, FlowState.DONE, log)
                return output

            log.warning("output_validation_failed",
                        issues=[str(i) for i in issues],
                        repair_attempts=run.repair_attempts)
            if run.repair_attempts >= self.config.max_output_repairs:
                raise OutputValidationError(issues, response.raw_output)
            run.repair_attempts += 1
            run.history.append(Message(role=MessageRole.ASSISTANT, content=_as_text(response.raw_output)))
            run.history.append(Message(
                role=MessageRole.USER,
                content=compile_repair_prompt(issues, flow.output_schema),
            ))

    async def _handle_tool_call(self, flow: FlowDefinition, call: ToolCall, run: FlowRun, log):
        self._transition(run, FlowState.TOOL_CALL, log)
        if not flow.allows_tool(call.name) or self.tools.get(call.name) is None:
            raise UnknownToolError(call.name, flow.tool_names)

        self._transition(run, FlowState.EXECUTING_TOOL, log)
        try:
            record = await self.tools.invoke(call.name, call.arguments)
        except RETRYABLE_TOOL_ERRORS as e:
            run.tool_failures += 1
            run.tool_calls.append(ToolCallRecord(
                tool_name=call.name,
                arguments=call.arguments,
                error=e.message,
                error_kind=e.kind,
            ))
            self._append_tool_turn(run, call, json.dumps({"error": e.kind, "message": e.message}), is_error=True)
            log.warning("tool_failed",
                        tool=call.name,
                        kind=e.kind,
                        failures=run.tool_failures,
                        max_failures=self.config.max_tool_failures)
            if run.tool_failures >= self.config.max_tool_failures:
                raise ToolExhaustedError(call.name, run.tool_failures, e) from e
            return

        run.tool_calls.append(record)
        self._append_tool_turn(run, call, json.dumps(record.result), is_error=False)

    # ══════════════════════════════════════════════════════════
    #  STAGES
    # ══════════════════════════════════════════════════════════

    def _compile(self, flow: FlowDefinition, input_value: dict[str, Any]) -> str:
        # Compilation is synchronous; its budget is checked as a deadline.
        started = time.monotonic()
        prompt = compile_prompt(
            flow.prompt,
            input_value,
            self.tools.catalogue(flow.tool_names),
            flow.output_schema,
        )
        if time.monotonic() - started > self.config.prompt_timeout_seconds:
            raise FlowTimeoutError("prompt_compile", self.config.prompt_timeout_seconds)
        return prompt

    async def _call_model(self, prompt: str, tools: list, run: FlowRun) -> ModelResponse:
        try:
            return await asyncio.wait_for(
                self.client.send(prompt, tools, list(run.history)),
                timeout=self.config.model_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise FlowTimeoutError("model_call", self.config.model_timeout_seconds) from None

    def _parse_output(self, flow: FlowDefinition, response: Final) -> tuple[Optional[dict[str, Any]], list[ValidationIssue]]:
        raw = response.raw_output
        if isinstance(raw, str):
            try:
                raw = extract_json(raw)
            except ValueError as e:
                return None, [ValidationIssue(
                    path="<root>",
                    message=f"Output is not valid JSON: {e}",
                    value=response.raw_output[:500],
                )]
        checked = validate(flow.output_schema, raw)
        return checked.value, checked.issues

    # ── Helpers ───────────────────────────────────────

    @staticmethod
    def _append_tool_turn(run: FlowRun, call: ToolCall, content: str, is_error: bool):
        run.history.append(Message(role=MessageRole.ASSISTANT, tool_call=call))
        run.history.append(Message(
            role=MessageRole.TOOL,
            content=content,
            tool_call_id=call.id,
            tool_name=call.name,
            is_error=is_error,
        ))

    @staticmethod
    def _transition(run: FlowRun, state: FlowState, log):
        log.debug("flow_state_changed", from_state=run.state.value, to_state=state.value)
        run.transition(state)

    @staticmethod
    def _fail(run: FlowRun, error: FlowError, log) -> FlowError:
        failed_in = run.state.value
        run.transition(FlowState.FAILED)
        error.flow_name = run.flow_name
        error.tool_calls = list(run.tool_calls)
        log.warning("flow_failed",
                    kind=error.kind,
                    error=error.message,
                    failed_in=failed_in,
                    model_turns=run.model_turns,
                    tool_failures=run.tool_failures)
        return error


def extract_json(text: str) -> Any:
    """
    Parse a JSON value out of model text.
    Accepts bare JSON, ```json fenced blocks, and an object embedded in prose.
    """
    text = text.strip()
    if text.startswith("```"):
        text = text.split("```")[1].strip()
        if text.startswith("json"):
            text = text[4:].strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise
        return json.loads(text[start:end + 1])


def _as_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    return json.dumps(raw, default=str)


def create_flow_orchestrator(
    settings: Settings = None,
    client: ModelClient = None,
    weather: WeatherService = None,
) -> FlowOrchestrator:
    """Bootstrap: build the model client, weather service and sealed registries once."""
    settings = settings or get_settings()
    client = client or create_model_client(settings.llm)
    weather = weather or create_weather_service(settings.weather)
    flows = create_default_flow_registry(weather, settings.flow.tool_timeout_seconds)
    logger.info("flow_orchestrator_ready",
                provider=client.provider,
                flows=[f.name for f in flows.list_all()])
    return FlowOrchestrator(client, flows, settings.flow)
