"""
Schema-validated, tool-calling AI flows.

A flow turns a typed input into a typed output by driving a model through
an optional tool loop:

  - Schema validation on the way in and on the way out
  - A closed, sealed registry of tools the model may call
  - Strict prompt compilation (no silent blanks)
  - A bounded orchestration loop (see core.orchestrator)
"""
from flows.errors import (
    FlowError, UnknownFlowError, InputValidationError, OutputValidationError,
    PromptCompileError, UnknownToolError, ToolArgumentError, ToolHandlerError,
    ToolOutputError, ToolExhaustedError, ModelTransportError, ModelTurnLimitError,
    FlowTimeoutError, FlowCancelledError,
)
from flows.validator import ValidationResult, validate, to_json_schema
from flows.tool_registry import ToolRegistry, ToolDescriptor
from flows.models import PromptTemplate, FlowDefinition, FlowRun, FlowRunResult
from flows.prompt import compile_prompt, compile_repair_prompt, render_template
from flows.registry import FlowRegistry
