"""
Flow errors — one exception type per failure kind.

Every error carries a machine-readable ``kind`` plus ``details`` with the
field paths, tool name or offending value needed to diagnose it. The
orchestrator decides retry vs. abort by type alone.
"""
from __future__ import annotations

from typing import Any, Optional

from models.schemas import ToolCallRecord, ValidationIssue


class FlowError(Exception):
    """Base class for every failure surfaced by a flow invocation."""

    kind = "FlowError"

    def __init__(self, message: str, details: dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.flow_name: str = ""
        self.tool_calls: list[ToolCallRecord] = []

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "flow": self.flow_name,
            "details": self.details,
        }


class _IssuesError(FlowError):
    """A failure described by a list of schema violations."""

    def __init__(self, message: str, issues: list[ValidationIssue], details: dict[str, Any] = None):
        self.issues = list(issues)
        merged = {"issues": [i.model_dump() for i in self.issues]}
        merged.update(details or {})
        summary = "; ".join(str(i) for i in self.issues[:5])
        super().__init__(f"{message}: {summary}" if summary else message, merged)


class UnknownFlowError(FlowError):
    kind = "UnknownFlowError"

    def __init__(self, flow_name: str):
        super().__init__(f"Unknown flow: {flow_name}", {"flow_name": flow_name})


class InputValidationError(_IssuesError):
    kind = "InputValidationError"

    def __init__(self, issues: list[ValidationIssue]):
        super().__init__("Flow input failed validation", issues)


class OutputValidationError(_IssuesError):
    kind = "OutputValidationError"

    def __init__(self, issues: list[ValidationIssue], raw_output: Any = None):
        super().__init__("Model output failed validation", issues, {"raw_output": raw_output})
        self.raw_output = raw_output


class PromptCompileError(FlowError):
    kind = "PromptCompileError"

    def __init__(self, template_name: str, unresolved: list[str]):
        self.unresolved = list(unresolved)
        super().__init__(
            f"Prompt '{template_name}' has unresolved placeholders: {', '.join(self.unresolved)}",
            {"template": template_name, "unresolved": self.unresolved},
        )


# ── Tool failures ─────────────────────────────────────

class ToolError(FlowError):
    """A failure attributable to a single tool."""

    kind = "ToolError"

    def __init__(self, tool_name: str, message: str, details: dict[str, Any] = None):
        self.tool_name = tool_name
        merged = {"tool_name": tool_name}
        merged.update(details or {})
        super().__init__(message, merged)


class UnknownToolError(ToolError):
    kind = "UnknownToolError"

    def __init__(self, tool_name: str, available: list[str] = None):
        super().__init__(
            tool_name, f"Unknown tool: {tool_name}",
            {"available": sorted(available or [])},
        )


class ToolArgumentError(ToolError):
    kind = "ToolArgumentError"

    def __init__(self, tool_name: str, issues: list[ValidationIssue], arguments: Any = None):
        self.issues = list(issues)
        super().__init__(
            tool_name,
            f"Invalid arguments for tool '{tool_name}': " + "; ".join(str(i) for i in self.issues),
            {"issues": [i.model_dump() for i in self.issues], "arguments": arguments},
        )


class ToolHandlerError(ToolError):
    kind = "ToolHandlerError"

    def __init__(self, tool_name: str, cause: BaseException):
        self.cause = cause
        super().__init__(
            tool_name,
            f"Tool '{tool_name}' failed: {type(cause).__name__}: {cause}",
            {"exception": type(cause).__name__},
        )


class ToolOutputError(ToolError):
    kind = "ToolOutputError"

    def __init__(self, tool_name: str, issues: list[ValidationIssue], result: Any = None):
        self.issues = list(issues)
        super().__init__(
            tool_name,
            f"Tool '{tool_name}' returned an invalid result: " + "; ".join(str(i) for i in self.issues),
            {"issues": [i.model_dump() for i in self.issues], "result": result},
        )


class ToolExhaustedError(ToolError):
    kind = "ToolExhaustedError"

    def __init__(self, tool_name: str, failures: int, last_error: Optional[ToolError] = None):
        self.failures = failures
        self.last_error = last_error
        super().__init__(
            tool_name,
            f"Tool failures reached the retry bound ({failures})",
            {
                "failures": failures,
                "last_error": last_error.to_dict() if last_error else None,
            },
        )


# ── Model / runtime failures ──────────────────────────

class ModelTransportError(FlowError):
    kind = "ModelTransportError"

    def __init__(self, provider: str, cause: BaseException):
        self.cause = cause
        super().__init__(
            f"Model call via '{provider}' failed: {type(cause).__name__}: {cause}",
            {"provider": provider, "exception": type(cause).__name__},
        )


class ModelTurnLimitError(FlowError):
    kind = "ModelTurnLimitError"

    def __init__(self, turns: int):
        super().__init__(f"Model did not finish within {turns} turns", {"turns": turns})


class FlowTimeoutError(FlowError):
    kind = "TimeoutError"

    def __init__(self, stage: str, timeout_seconds: float, tool_name: str = ""):
        self.stage = stage
        details = {"stage": stage, "timeout_seconds": timeout_seconds}
        if tool_name:
            details["tool_name"] = tool_name
        super().__init__(f"Timed out after {timeout_seconds}s during {stage}", details)


class FlowCancelledError(FlowError):
    kind = "CancellationError"

    def __init__(self, state: str):
        super().__init__(f"Flow invocation cancelled while {state}", {"state": state})
