"""
Weather Service — Coordinate-based weather lookup used as a flow tool.

Two implementations behind one interface:
  - RESTWeatherService: calls a configured HTTP weather API
  - MockWeatherService: deterministic-enough placeholder for development

Handlers built on top of this service must be safe to retry; both
implementations are read-only lookups.
"""
from __future__ import annotations

import abc
import asyncio
import random
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import WeatherConfig, get_settings

logger = structlog.get_logger()


class WeatherService(abc.ABC):
    """Abstract base for all weather providers."""

    @abc.abstractmethod
    async def get_weather(self, lat: float, lng: float) -> dict[str, Any]:
        """
        Current weather at a location.

        Returns:
            {"temperatureFahrenheit": float, "conditions": str}
        """
        ...

    async def close(self):
        return None


class RESTWeatherService(WeatherService):
    """
    REST weather API client.
    Expects a JSON body with a temperature (°F) and a conditions summary.
    """

    def __init__(self, config: WeatherConfig = None):
        self.config = config or get_settings().weather
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["X-API-Key"] = self.config.api_key
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=10.0,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, params: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.get(self.config.endpoint, params=params)
        response.raise_for_status()
        return response.json()

    async def get_weather(self, lat: float, lng: float) -> dict[str, Any]:
        data = await self._request({"lat": lat, "lng": lng})
        temperature = data.get("temperatureFahrenheit", data.get("temperature_f"))
        conditions = data.get("conditions", data.get("summary"))
        logger.debug("weather_fetched", lat=lat, lng=lng, conditions=conditions)
        return {"temperatureFahrenheit": temperature, "conditions": conditions}

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockWeatherService(WeatherService):
    """
    Placeholder weather for development and testing.

    Baseline 70°F and Sunny; 55°F and Cloudy north of 45°; 80°F south of 30°.
    With jitter: +/- 5°F and a 10% chance of Rainy.
    """

    def __init__(self, jitter: bool = True, latency_seconds: float = 0.3, seed: int = None):
        self.jitter = jitter
        self.latency_seconds = latency_seconds
        self._rng = random.Random(seed)

    async def get_weather(self, lat: float, lng: float) -> dict[str, Any]:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        temperature = 70.0
        conditions = "Sunny"
        if lat > 45:
            temperature = 55.0
            conditions = "Cloudy"
        elif lat < 30:
            temperature = 80.0

        if self.jitter:
            temperature += self._rng.uniform(-5, 5)
            if self._rng.random() < 0.1:
                conditions = "Rainy"

        logger.debug("mock_weather", lat=lat, lng=lng,
                     temperature=round(temperature), conditions=conditions)
        return {"temperatureFahrenheit": float(round(temperature)), "conditions": conditions}


def create_weather_service(config: WeatherConfig = None) -> WeatherService:
    """Factory function to create the configured weather service."""
    config = config or get_settings().weather
    if config.type == "rest" and config.base_url:
        return RESTWeatherService(config)
    if config.type == "rest":
        logger.warning("using_mock_weather", reason="no weather base_url configured")
    return MockWeatherService(jitter=config.jitter)
