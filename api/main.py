"""
FastAPI Application — Flow Invocation API.

Provides:
- Health check
- Flow catalogue with input/output JSON Schemas
- POST endpoint that invokes a flow and returns its validated output

Every FlowError is rendered as {"error", "message", "flow", "details"}
with a status code that reflects who is at fault.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import Body, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import get_settings
from core.engine import create_model_client
from core.orchestrator import create_flow_orchestrator
from backend.weather import create_weather_service
from flows.errors import (
    FlowError, FlowCancelledError, FlowTimeoutError, InputValidationError,
    ModelTransportError, ModelTurnLimitError, OutputValidationError,
    PromptCompileError, ToolExhaustedError, UnknownFlowError, UnknownToolError,
)
from flows.validator import to_json_schema

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
model_client = create_model_client(_settings_boot.llm)
weather_service = create_weather_service(_settings_boot.weather)
orchestrator = create_flow_orchestrator(_settings_boot, client=model_client, weather=weather_service)

STATUS_BY_ERROR: dict[type, int] = {
    UnknownFlowError: 404,
    InputValidationError: 422,
    PromptCompileError: 422,
    FlowTimeoutError: 504,
    ModelTransportError: 502,
    UnknownToolError: 502,
    ToolExhaustedError: 502,
    OutputValidationError: 502,
    ModelTurnLimitError: 502,
    FlowCancelledError: 499,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("swiftdispatch_flows_started",
                app=settings.app_name,
                provider=model_client.provider,
                flows=[f.name for f in orchestrator.flows.list_all()])
    yield
    await model_client.close()
    await weather_service.close()
    logger.info("swiftdispatch_flows_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="SwiftDispatch Flows API",
    description="Schema-validated AI flows for route optimization and ETA prediction",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FlowError)
async def flow_error_handler(request: Request, exc: FlowError):
    status = STATUS_BY_ERROR.get(type(exc), 500)
    return JSONResponse(status_code=status, content=jsonable_error(exc))


def jsonable_error(exc: FlowError) -> dict[str, Any]:
    body = exc.to_dict()
    # details can carry raw model/tool values; make sure they serialize
    body["details"] = {k: _jsonable(v) for k, v in body["details"].items()}
    return body


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)


# ══════════════════════════════════════════════════════════════
#  HEALTH & CATALOGUE
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "provider": orchestrator.client.provider,
        "flows": len(orchestrator.flows.list_all()),
        "tools": orchestrator.tools.count,
    }


@app.get("/api/v1/flows")
async def list_flows():
    return [
        {
            "name": flow.name,
            "description": flow.description,
            "input_schema": to_json_schema(flow.input_schema),
            "output_schema": to_json_schema(flow.output_schema),
            "tools": flow.tool_names,
        }
        for flow in orchestrator.flows.list_all()
    ]


# ══════════════════════════════════════════════════════════════
#  INVOCATION
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/flows/{flow_name}")
async def invoke_flow(flow_name: str, payload: Any = Body(...)):
    result = await orchestrator.run(flow_name, payload)
    return {
        "flow": result.flow_name,
        "run_id": result.run_id,
        "output": result.output,
        "model_turns": result.model_turns,
        "repair_attempts": result.repair_attempts,
        "tool_calls": [
            {
                "tool": record.tool_name,
                "ok": record.ok,
                "error_kind": record.error_kind,
                "duration_ms": round(record.duration_ms, 1),
            }
            for record in result.tool_calls
        ],
    }
