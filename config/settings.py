"""
Configuration loader for the SwiftDispatch flow system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"           # anthropic | openai | mock
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.2
    max_tokens: int = 1024
    api_key: str = ""
    base_url: str = ""                    # optional gateway / proxy
    transport_retries: int = 3            # attempts per model call on transport errors


@dataclass
class FlowConfig:
    max_tool_failures: int = 3            # tool failures per invocation before giving up
    max_output_repairs: int = 1           # re-prompts after an invalid final answer
    max_model_turns: int = 8              # model round-trips per invocation
    prompt_timeout_seconds: float = 2.0
    model_timeout_seconds: float = 60.0
    tool_timeout_seconds: float = 10.0    # default when a tool declares none
    flow_timeout_seconds: float = 180.0


@dataclass
class WeatherConfig:
    type: str = "mock"                    # mock | rest
    base_url: str = ""
    api_key: str = ""
    endpoint: str = "/weather"
    jitter: bool = True                   # mock only: +/- 5°F and a 10% chance of rain


@dataclass
class Settings:
    app_name: str = "SwiftDispatch"
    debug: bool = False
    llm: LLMConfig = field(default_factory=LLMConfig)
    flow: FlowConfig = field(default_factory=FlowConfig)
    weather: WeatherConfig = field(default_factory=WeatherConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "SWIFTDISPATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        if "llm" in raw:
            settings.llm = _section(LLMConfig, raw["llm"])
        if "flow" in raw:
            settings.flow = _section(FlowConfig, raw["flow"])
        if "weather" in raw:
            settings.weather = _section(WeatherConfig, raw["weather"])

    _settings = settings
    return settings


def _section(cls, raw: dict[str, Any]):
    """Build one config dataclass, coercing YAML values to the types of its defaults."""
    defaults = cls()
    values = {}
    for f in fields(cls):
        # A key left empty in YAML (null) keeps its default
        if (raw or {}).get(f.name) is None:
            continue
        value, default = raw[f.name], getattr(defaults, f.name)
        if isinstance(default, bool):
            value = bool(value)
        elif isinstance(default, (int, float)):
            value = type(default)(value)
        else:
            value = _unresolved_to_empty(value)
        values[f.name] = value
    return cls(**values)


def _unresolved_to_empty(value: str) -> str:
    """A ${VAR} left in place means the variable is not set."""
    if isinstance(value, str) and re.fullmatch(r'\$\{\w+\}', value):
        return ""
    return value or ""


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
