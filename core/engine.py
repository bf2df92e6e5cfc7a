"""
Model Invocation Client — one round-trip to the generative backend.

The only component that knows about vendor transports. Every client takes
the same three things (compiled prompt, tool descriptors, conversation
history) and returns the same tagged variant:

  ToolCall{id, name, arguments}   the model wants a tool run
  Final{raw_output}               the model's answer, text or structured

Supports Anthropic and OpenAI, plus a scripted mock for development and
tests. Transport failures are retried with exponential backoff; whatever
still fails surfaces as ModelTransportError.
"""
from __future__ import annotations

import abc
import inspect
import json
import structlog
from typing import Any, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import LLMConfig, get_settings
from models.schemas import Final, Message, MessageRole, ModelResponse, ToolCall
from flows.catalog import PlaceholderModel
from flows.errors import ModelTransportError
from flows.tool_registry import ToolDescriptor
from flows.validator import to_json_schema

logger = structlog.get_logger()

# Stands in for an empty final answer when it is replayed in history.
EMPTY_REPLY = "(empty response)"


class ModelClient(abc.ABC):
    """Abstract base for all model clients."""

    provider = "base"

    def __init__(self, config: LLMConfig = None):
        self.config = config or get_settings().llm
        self._client = None

    async def send(
        self,
        prompt: str,
        tools: list[ToolDescriptor],
        history: list[Message],
    ) -> ModelResponse:
        """
        Send one request and return the model's reply.

        Args:
            prompt:  Compiled prompt (always the first user turn)
            tools:   Descriptors the model may call this turn
            history: Conversation so far, oldest first; never mutated here
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.transport_retries)),
            wait=wait_exponential(multiplier=0.5, max=8),
            retry=retry_if_exception(self._is_transient),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._send(prompt, tools, history)
        except Exception as e:
            logger.error("model_call_failed", provider=self.provider, error=str(e))
            raise ModelTransportError(self.provider, e) from e

        logger.info("model_response_received",
                    provider=self.provider,
                    kind=response.kind,
                    tool=getattr(response, "name", None))
        return response

    @abc.abstractmethod
    async def _send(
        self,
        prompt: str,
        tools: list[ToolDescriptor],
        history: list[Message],
    ) -> ModelResponse:
        ...

    def _is_transient(self, exc: BaseException) -> bool:
        """Retry transport-level failures; never cancellation or malformed replies."""
        if not isinstance(exc, Exception):
            return False
        return not isinstance(exc, (ValueError, TypeError, LookupError))

    async def close(self):
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
        self._client = None


# ──────────────────────────────────────────────────────────────
#  Anthropic
# ──────────────────────────────────────────────────────────────

class AnthropicModelClient(ModelClient):
    """Messages API with tool_use / tool_result content blocks."""

    provider = "anthropic"

    async def _get_client(self):
        if self._client is None:
            import anthropic
            kwargs: dict[str, Any] = {"api_key": self.config.api_key, "max_retries": 0}
            if self.config.base_url:
                kwargs["base_url"] = self.config.base_url
            self._client = anthropic.AsyncAnthropic(**kwargs)
            logger.info("llm_client_initialized", provider="anthropic",
                        model=self.config.model)
        return self._client

    def _is_transient(self, exc: BaseException) -> bool:
        import anthropic
        return isinstance(exc, (
            anthropic.APIConnectionError,
            anthropic.RateLimitError,
            anthropic.InternalServerError,
        ))

    async def _send(self, prompt, tools, history) -> ModelResponse:
        client = await self._get_client()
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": self.build_messages(prompt, history),
        }
        if tools:
            kwargs["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": to_json_schema(t.input_schema),
                }
                for t in tools
            ]
            # One tool per turn: the orchestrator answers exactly one tool_use id.
            kwargs["tool_choice"] = {"type": "auto", "disable_parallel_tool_use": True}

        response = await client.messages.create(**kwargs)
        return self.parse_response(response)

    @staticmethod
    def build_messages(prompt: str, history: list[Message]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        for entry in history:
            if entry.role == MessageRole.ASSISTANT and entry.tool_call:
                arguments = entry.tool_call.arguments
                messages.append({"role": "assistant", "content": [{
                    "type": "tool_use",
                    "id": entry.tool_call.id,
                    "name": entry.tool_call.name,
                    # tool_use input must be an object; anything else is replayed as sent
                    "input": arguments if isinstance(arguments, dict) else {"_raw": arguments},
                }]})
            elif entry.role == MessageRole.TOOL:
                messages.append({"role": "user", "content": [{
                    "type": "tool_result",
                    "tool_use_id": entry.tool_call_id,
                    "content": entry.content,
                    "is_error": entry.is_error,
                }]})
            elif entry.role == MessageRole.ASSISTANT:
                # The Messages API rejects empty assistant turns.
                messages.append({"role": "assistant", "content": entry.content or EMPTY_REPLY})
            else:
                messages.append({"role": entry.role.value, "content": entry.content})
        return messages

    @staticmethod
    def parse_response(response) -> ModelResponse:
        texts = []
        for block in response.content:
            if block.type == "tool_use":
                return ToolCall(id=block.id, name=block.name, arguments=block.input)
            if block.type == "text":
                texts.append(block.text)
        return Final(raw_output="".join(texts))


# ──────────────────────────────────────────────────────────────
#  OpenAI
# ──────────────────────────────────────────────────────────────

class OpenAIModelClient(ModelClient):
    """Chat Completions API with function tools."""

    provider = "openai"

    async def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            kwargs: dict[str, Any] = {"api_key": self.config.api_key, "max_retries": 0}
            if self.config.base_url:
                kwargs["base_url"] = self.config.base_url
            self._client = AsyncOpenAI(**kwargs)
            logger.info("llm_client_initialized", provider="openai",
                        model=self.config.model)
        return self._client

    def _is_transient(self, exc: BaseException) -> bool:
        import openai
        return isinstance(exc, (
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ))

    async def _send(self, prompt, tools, history) -> ModelResponse:
        client = await self._get_client()
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": self.build_messages(prompt, history),
        }
        if tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": to_json_schema(t.input_schema),
                    },
                }
                for t in tools
            ]
            kwargs["parallel_tool_calls"] = False

        response = await client.chat.completions.create(**kwargs)
        return self.parse_response(response)

    @staticmethod
    def build_messages(prompt: str, history: list[Message]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        for entry in history:
            if entry.role == MessageRole.ASSISTANT and entry.tool_call:
                messages.append({
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [{
                        "id": entry.tool_call.id,
                        "type": "function",
                        "function": {
                            "name": entry.tool_call.name,
                            "arguments": _arguments_text(entry.tool_call.arguments),
                        },
                    }],
                })
            elif entry.role == MessageRole.TOOL:
                messages.append({
                    "role": "tool",
                    "tool_call_id": entry.tool_call_id,
                    "content": entry.content,
                })
            else:
                messages.append({"role": entry.role.value, "content": entry.content})
        return messages

    @staticmethod
    def parse_response(response) -> ModelResponse:
        message = response.choices[0].message
        if message.tool_calls:
            call = message.tool_calls[0]
            raw_args = call.function.arguments or "{}"
            try:
                arguments = json.loads(raw_args)
            except json.JSONDecodeError:
                # Left as text; argument validation reports it.
                arguments = raw_args
            return ToolCall(id=call.id, name=call.function.name, arguments=arguments)
        return Final(raw_output=message.content or "")


def _arguments_text(arguments: Any) -> str:
    # Undecodable arguments were kept as the text the model sent.
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments)


# ──────────────────────────────────────────────────────────────
#  Mock — scripted replies for development and tests
# ──────────────────────────────────────────────────────────────

Responder = Callable[[str, list[ToolDescriptor], list[Message]], Any]


class MockModelClient(ModelClient):
    """
    Replays a script of responses, or asks a responder callable.

    Script items are ModelResponses or exceptions (raised in place).
    Every request is recorded with a snapshot of its history.
    """

    provider = "mock"

    def __init__(
        self,
        script: list[Any] = None,
        responder: Optional[Responder] = None,
        config: LLMConfig = None,
    ):
        super().__init__(config or LLMConfig(provider="mock", transport_retries=1))
        self._script = list(script or [])
        self._responder = responder
        self.requests: list[dict[str, Any]] = []

    def queue(self, *items: Any):
        self._script.extend(items)

    async def _send(self, prompt, tools, history) -> ModelResponse:
        self.requests.append({
            "prompt": prompt,
            "tools": [t.name for t in tools],
            "history": [m.model_copy(deep=True) for m in history],
        })
        if self._responder is not None:
            reply = self._responder(prompt, tools, history)
            if inspect.isawaitable(reply):
                reply = await reply
            return reply
        if not self._script:
            raise LookupError("MockModelClient has no scripted response left")
        item = self._script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    @property
    def call_count(self) -> int:
        return len(self.requests)


def create_model_client(config: LLMConfig = None) -> ModelClient:
    """
    Factory function to create the configured model client.

    Without an API key (or with provider "mock") the client answers through
    PlaceholderModel, so development setups still return valid output.
    """
    config = config or get_settings().llm
    if config.provider == "mock":
        return MockModelClient(responder=PlaceholderModel(), config=config)
    if not config.api_key:
        logger.warning("using_placeholder_model", reason="no api_key configured",
                       provider=config.provider)
        return MockModelClient(responder=PlaceholderModel(), config=config)
    if config.provider == "openai":
        return OpenAIModelClient(config)
    if config.provider == "anthropic":
        return AnthropicModelClient(config)
    raise ValueError(f"Unknown LLM provider: {config.provider}")
