"""Shared test fixtures for SwiftDispatch flows."""
import json
import pytest
from typing import Any

from backend.weather import MockWeatherService
from config.settings import FlowConfig
from core.engine import MockModelClient
from core.orchestrator import FlowOrchestrator
from flows.catalog import (
    WEATHER_INPUT, WEATHER_OUTPUT,
    build_optimize_route_flow, build_predict_eta_flow, create_default_flow_registry,
)
from flows.registry import FlowRegistry
from flows.tool_registry import ToolDescriptor, ToolRegistry
from models.schemas import Final, MessageRole, ToolCall


ROUTE_OUTPUT = {
    "optimalRoute": "Take US-101 N to CA-2 W, avoiding Sunset Blvd congestion.",
    "estimatedArrivalTime": "18 minutes",
    "weatherConditions": "Sunny, 72°F",
}


class CountingHandler:
    """Tool handler that returns a fixed result, optionally failing the first N calls."""

    def __init__(self, result: dict[str, Any], fail_times: int = 0, exc: Exception = None):
        self.result = result
        self.fail_times = fail_times
        self.exc = exc or RuntimeError("weather backend unavailable")
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, args: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(args)
        if len(self.calls) <= self.fail_times:
            raise self.exc
        return dict(self.result)


@pytest.fixture
def route_input() -> dict[str, Any]:
    return {
        "startLocation": {"lat": 34.05, "lng": -118.24},
        "endLocation": {"lat": 34.10, "lng": -118.30},
        "currentTrafficConditions": "moderate",
    }


@pytest.fixture
def eta_input() -> dict[str, Any]:
    return {
        "driverLocation": {"lat": 40.71, "lng": -74.00},
        "pickupLocation": {"lat": 40.73, "lng": -73.99, "address": "12 Bleecker St"},
        "dropoffLocation": {"lat": 40.76, "lng": -73.97},
        "trafficConditions": "heavy",
    }


@pytest.fixture
def flow_config() -> FlowConfig:
    return FlowConfig(
        max_tool_failures=3,
        max_output_repairs=1,
        max_model_turns=6,
        prompt_timeout_seconds=2.0,
        model_timeout_seconds=2.0,
        tool_timeout_seconds=2.0,
        flow_timeout_seconds=5.0,
    )


@pytest.fixture
def weather_service() -> MockWeatherService:
    return MockWeatherService(jitter=False, latency_seconds=0)


@pytest.fixture
def weather_handler() -> CountingHandler:
    return CountingHandler({"temperatureFahrenheit": 72, "conditions": "Sunny"})


def make_weather_tool(handler, timeout_seconds: float = None) -> ToolDescriptor:
    return ToolDescriptor(
        name="getWeatherConditions",
        description="Retrieves the current weather conditions for a given location.",
        input_schema=WEATHER_INPUT,
        output_schema=WEATHER_OUTPUT,
        handler=handler,
        timeout_seconds=timeout_seconds,
    )


def make_registry(handler, timeout_seconds: float = None) -> FlowRegistry:
    registry = FlowRegistry(ToolRegistry(default_timeout_seconds=2.0))
    tool = make_weather_tool(handler, timeout_seconds)
    registry.register(build_optimize_route_flow(tool))
    registry.register(build_predict_eta_flow(tool))
    registry.seal()
    return registry


@pytest.fixture
def flow_registry(weather_handler) -> FlowRegistry:
    return make_registry(weather_handler)


@pytest.fixture
def default_registry(weather_service) -> FlowRegistry:
    return create_default_flow_registry(weather_service)


@pytest.fixture
def make_orchestrator(flow_registry, flow_config):
    """Build an orchestrator around a MockModelClient with the given script/responder."""
    def _make(script=None, responder=None, registry=None, config=None):
        client = MockModelClient(script=script, responder=responder)
        orchestrator = FlowOrchestrator(client, registry or flow_registry, config or flow_config)
        return orchestrator, client
    return _make


def weather_then_answer(prompt, tools, history):
    """
    Plays a well-behaved model: asks for destination weather once,
    then answers using whatever the tool returned.
    """
    results = [m for m in history if m.role == MessageRole.TOOL and not m.is_error]
    if not results:
        return ToolCall(name="getWeatherConditions", arguments={"lat": 34.10, "lng": -118.30})
    weather = json.loads(results[-1].content)
    return Final(raw_output=json.dumps({
        "optimalRoute": "Take US-101 N to CA-2 W, avoiding Sunset Blvd congestion.",
        "estimatedArrivalTime": "18 minutes",
        "weatherConditions": f"{weather['conditions']}, {weather['temperatureFahrenheit']:.0f}°F",
    }))


@pytest.fixture
def handler_factory():
    return CountingHandler


@pytest.fixture
def tool_factory():
    return make_weather_tool


@pytest.fixture
def registry_factory():
    return make_registry


@pytest.fixture
def route_model():
    return weather_then_answer


@pytest.fixture
def route_output() -> dict[str, Any]:
    return dict(ROUTE_OUTPUT)
