"""
Built-in flows for the delivery platform.

  optimizeRouteFlow — best delivery route and arrival time between two
                      points, given traffic, using weather at the destination
  predictEtaFlow    — ETA for driver → pickup → dropoff, with optional
                      traffic / weather / time-of-day hints

Both can call getWeatherConditions, a thin tool over the WeatherService.
"""
from __future__ import annotations

import json
import random
import re
from typing import Any

from backend.weather import WeatherService
from models.schemas import (
    Final, Message, MessageRole, ModelResponse, Schema, ToolCall,
    enum_field, number_field, object_field, string_field,
)
from flows.models import FlowDefinition, PromptTemplate
from flows.registry import FlowRegistry
from flows.tool_registry import ToolDescriptor, ToolRegistry


def _coordinates(subject: str) -> list:
    return [
        number_field("lat", f"The latitude of the {subject}.", minimum=-90, maximum=90),
        number_field("lng", f"The longitude of the {subject}.", minimum=-180, maximum=180),
    ]


# ──────────────────────────────────────────────────────────────
#  Tools
# ──────────────────────────────────────────────────────────────

WEATHER_INPUT = Schema(
    name="WeatherInput",
    properties=tuple(_coordinates("location")),
)

WEATHER_OUTPUT = Schema(
    name="WeatherOutput",
    properties=(
        number_field("temperatureFahrenheit", "Current temperature in Fahrenheit."),
        string_field("conditions", "Current conditions, e.g. Sunny, Cloudy, Rainy.", min_length=1),
    ),
)


def build_weather_tool(weather: WeatherService, timeout_seconds: float = None) -> ToolDescriptor:
    """getWeatherConditions backed by the given weather service."""

    async def get_weather_conditions(args: dict[str, Any]) -> dict[str, Any]:
        return await weather.get_weather(args["lat"], args["lng"])

    return ToolDescriptor(
        name="getWeatherConditions",
        description="Retrieves the current weather conditions for a given location.",
        input_schema=WEATHER_INPUT,
        output_schema=WEATHER_OUTPUT,
        handler=get_weather_conditions,
        timeout_seconds=timeout_seconds,
    )


# ──────────────────────────────────────────────────────────────
#  optimizeRouteFlow
# ──────────────────────────────────────────────────────────────

OPTIMIZE_ROUTE_INPUT = Schema(
    name="OptimizeRouteInput",
    properties=(
        object_field("startLocation", _coordinates("starting location"),
                     "The starting location coordinates."),
        object_field("endLocation", _coordinates("destination location"),
                     "The destination location coordinates."),
        string_field("currentTrafficConditions",
                     "The current traffic conditions (e.g., light, moderate, heavy).",
                     min_length=1),
    ),
)

OPTIMIZE_ROUTE_OUTPUT = Schema(
    name="OptimizeRouteOutput",
    properties=(
        string_field("optimalRoute",
                     "A description of the optimal route, considering traffic and weather.",
                     min_length=1),
        string_field("estimatedArrivalTime", "The estimated time of arrival.", min_length=1),
        string_field("weatherConditions", "The weather conditions at destination.", min_length=1),
    ),
)

OPTIMIZE_ROUTE_PROMPT = PromptTemplate(
    name="optimizeRoutePrompt",
    text="""You are a route optimization expert. Given the start and end locations, current traffic conditions, and weather conditions at the destination, suggest the optimal delivery route and estimate the arrival time.

Start Location: {{{startLocation.lat}}}, {{{startLocation.lng}}}
End Location: {{{endLocation.lat}}}, {{{endLocation.lng}}}
Current Traffic Conditions: {{{currentTrafficConditions}}}

Consider using the getWeatherConditions tool to get weather information for the destination.

Output the optimal route, estimated arrival time, and weather conditions at the destination.""",
)


def build_optimize_route_flow(weather_tool: ToolDescriptor) -> FlowDefinition:
    return FlowDefinition(
        name="optimizeRouteFlow",
        description="Optimal delivery route considering traffic and destination weather.",
        input_schema=OPTIMIZE_ROUTE_INPUT,
        output_schema=OPTIMIZE_ROUTE_OUTPUT,
        prompt=OPTIMIZE_ROUTE_PROMPT,
        tools=(weather_tool,),
    )


# ──────────────────────────────────────────────────────────────
#  predictEtaFlow
# ──────────────────────────────────────────────────────────────

def _stop(name: str, subject: str, description: str):
    return object_field(name, _coordinates(subject) + [
        string_field("address", f"Optional address for {subject} context.", required=False),
    ], description)


PREDICT_ETA_INPUT = Schema(
    name="PredictEtaInput",
    properties=(
        object_field("driverLocation", _coordinates("driver"),
                     "The current latitude and longitude of the driver."),
        _stop("pickupLocation", "pickup location",
              "The latitude and longitude of the pickup location."),
        _stop("dropoffLocation", "dropoff location",
              "The latitude and longitude of the dropoff location."),
        string_field("trafficConditions",
                     "Current traffic conditions (e.g., light, moderate, heavy).", required=False),
        string_field("weatherConditions",
                     "Current weather conditions (e.g., sunny, rainy, snowy).", required=False),
        string_field("timeOfDay",
                     "Time of day which might affect traffic (e.g., morning rush, midday, evening).",
                     required=False),
    ),
)

PREDICT_ETA_OUTPUT = Schema(
    name="PredictEtaOutput",
    properties=(
        string_field("eta",
                     "The predicted Estimated Time of Arrival in a human-readable format "
                     "(e.g., '15 minutes', '1 hour 5 minutes').",
                     min_length=1),
        enum_field("confidence", ["High", "Medium", "Low"],
                   "Optional confidence level of the prediction.", required=False),
        string_field("reasoning",
                     "Optional explanation of factors influencing the ETA.", required=False),
    ),
)

PREDICT_ETA_PROMPT = PromptTemplate(
    name="predictEtaPrompt",
    text="""You are an AI assistant specialized in predicting delivery Estimated Time of Arrival (ETA).
Analyze the provided driver location, pickup location, dropoff location, and any optional factors like traffic and weather.

Driver Location: Lat {{driverLocation.lat}}, Lng {{driverLocation.lng}}
Pickup Location: Lat {{pickupLocation.lat}}, Lng {{pickupLocation.lng}}{{#if pickupLocation.address}} ({{pickupLocation.address}}){{/if}}
Dropoff Location: Lat {{dropoffLocation.lat}}, Lng {{dropoffLocation.lng}}{{#if dropoffLocation.address}} ({{dropoffLocation.address}}){{/if}}
{{#if trafficConditions}}
Current Traffic: {{trafficConditions}}{{/if}}{{#if weatherConditions}}
Current Weather: {{weatherConditions}}{{/if}}{{#if timeOfDay}}
Time of Day: {{timeOfDay}}{{/if}}

Based on this information, calculate the most likely ETA for the driver to reach the dropoff location after visiting the pickup location.
Consider typical travel speeds, potential delays due to traffic, weather, and time of day. If no weather is given, you may look it up with the getWeatherConditions tool.
Provide the ETA in a human-readable format (e.g., "15 minutes", "1 hour 5 minutes").
Optionally provide a confidence level and a brief reasoning for your prediction.""",
)


def build_predict_eta_flow(weather_tool: ToolDescriptor) -> FlowDefinition:
    return FlowDefinition(
        name="predictEtaFlow",
        description="Delivery ETA from driver through pickup to dropoff.",
        input_schema=PREDICT_ETA_INPUT,
        output_schema=PREDICT_ETA_OUTPUT,
        prompt=PREDICT_ETA_PROMPT,
        tools=(weather_tool,),
    )


def create_default_flow_registry(
    weather: WeatherService,
    tool_timeout_seconds: float = 10.0,
) -> FlowRegistry:
    """Create a sealed registry pre-loaded with the built-in flows."""
    registry = FlowRegistry(ToolRegistry(default_timeout_seconds=tool_timeout_seconds))
    weather_tool = build_weather_tool(weather)
    registry.register(build_optimize_route_flow(weather_tool))
    registry.register(build_predict_eta_flow(weather_tool))
    registry.seal()
    return registry


# ──────────────────────────────────────────────────────────────
#  Placeholder model (no LLM configured)
# ──────────────────────────────────────────────────────────────

_NUMBER = r"(-?\d+(?:\.\d+)?(?:e[-+]?\d+)?)"
_ROUTE_START = re.compile(rf"^Start Location: {_NUMBER}, {_NUMBER}$", re.MULTILINE)
_ROUTE_END = re.compile(rf"^End Location: {_NUMBER}, {_NUMBER}$", re.MULTILINE)
_ROUTE_TRAFFIC = re.compile(r"^Current Traffic Conditions: (.+)$", re.MULTILINE)
_ETA_DRIVER = re.compile(rf"^Driver Location: Lat {_NUMBER}, Lng {_NUMBER}$", re.MULTILINE)
_ETA_DROPOFF = re.compile(rf"^Dropoff Location: Lat {_NUMBER}, Lng {_NUMBER}\b", re.MULTILINE)
_ETA_TRAFFIC = re.compile(r"^Current Traffic: (.+)$", re.MULTILINE)
_ETA_WEATHER = re.compile(r"^Current Weather: (.+)$", re.MULTILINE)


class PlaceholderModel:
    """
    Stand-in model used when no LLM provider is configured.

    Answers the built-in flows with a rough distance-based simulation so
    the API and CLI stay usable in development: optimizeRouteFlow asks for
    the destination weather once, predictEtaFlow answers straight away.
    Travel time is (|Δlat| + |Δlng|) × 200 minutes (at least 5), ±5 minutes
    of noise, ×1.5 in heavy traffic and ×1.3 in rain or snow.
    """

    def __init__(self, rng: random.Random = None):
        self.rng = rng or random.Random()

    def __call__(self, prompt: str, tools: list, history: list[Message]) -> ModelResponse:
        if _ROUTE_START.search(prompt):
            return self._route(prompt, tools, history)
        if _ETA_DRIVER.search(prompt):
            return self._eta(prompt)
        raise LookupError("The placeholder model only answers the built-in flows; configure an LLM provider")

    def _route(self, prompt: str, tools: list, history: list[Message]) -> ModelResponse:
        start = _coords(_ROUTE_START, prompt)
        end = _coords(_ROUTE_END, prompt)
        traffic = _ROUTE_TRAFFIC.search(prompt).group(1).strip()

        tool_turns = [m for m in history if m.role == MessageRole.TOOL]
        if not tool_turns and any(t.name == "getWeatherConditions" for t in tools):
            return ToolCall(name="getWeatherConditions", arguments={"lat": end[0], "lng": end[1]})

        weather = "Unavailable"
        if tool_turns and not tool_turns[-1].is_error:
            result = json.loads(tool_turns[-1].content)
            weather = f"{result['conditions']}, {result['temperatureFahrenheit']:.0f}°F"

        minutes = self._minutes(start, end, traffic, weather)
        return Final(raw_output={
            "optimalRoute": (f"Most direct route from ({start[0]}, {start[1]}) to "
                             f"({end[0]}, {end[1]}), allowing for {traffic} traffic."),
            "estimatedArrivalTime": _format_minutes(minutes),
            "weatherConditions": weather,
        })

    def _eta(self, prompt: str) -> ModelResponse:
        traffic = _ETA_TRAFFIC.search(prompt)
        weather = _ETA_WEATHER.search(prompt)
        minutes = self._minutes(
            _coords(_ETA_DRIVER, prompt),
            _coords(_ETA_DROPOFF, prompt),
            traffic.group(1).strip() if traffic else "",
            weather.group(1).strip() if weather else "",
        )
        return Final(raw_output={
            "eta": _format_minutes(minutes),
            "confidence": "Medium",
            "reasoning": "Calculated based on distance and simulated factors.",
        })

    def _minutes(self, origin, destination, traffic: str, weather: str) -> int:
        distance = (abs(origin[0] - destination[0]) + abs(origin[1] - destination[1])) * 1000
        base = max(5, round(distance / 5))
        minutes = max(1, round(base + self.rng.uniform(-5, 5)))
        if traffic.lower() == "heavy":
            minutes *= 1.5
        if any(w in weather.lower() for w in ("rain", "snow")):
            minutes *= 1.3
        return round(minutes)


def _coords(pattern: re.Pattern, prompt: str) -> tuple[float, float]:
    match = pattern.search(prompt)
    return float(match.group(1)), float(match.group(2))


def _format_minutes(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes > 1 else ''}"
    hours, rest = divmod(minutes, 60)
    text = f"{hours} hour{'s' if hours > 1 else ''}"
    if rest:
        text += f" {rest} minute{'s' if rest > 1 else ''}"
    return text
