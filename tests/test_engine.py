"""Tests for model clients: vendor message mapping, retries and the factory."""
import json
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx

from config.settings import LLMConfig
from core.engine import (
    EMPTY_REPLY, AnthropicModelClient, MockModelClient, OpenAIModelClient, create_model_client,
)
from flows.errors import ModelTransportError
from models.schemas import Final, Message, MessageRole, ToolCall


@pytest.fixture
def tool_history() -> list[Message]:
    call = ToolCall(id="call_abc", name="getWeatherConditions", arguments={"lat": 34.1, "lng": -118.3})
    return [
        Message(role=MessageRole.ASSISTANT, tool_call=call),
        Message(role=MessageRole.TOOL, content='{"conditions": "Sunny"}',
                tool_call_id="call_abc", tool_name="getWeatherConditions"),
        Message(role=MessageRole.USER, content="Please fix your answer."),
    ]


def anthropic_response(*blocks):
    return SimpleNamespace(content=list(blocks))


def openai_response(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


# ══════════════════════════════════════════════════════════════
#  Anthropic
# ══════════════════════════════════════════════════════════════

class TestAnthropicClient:
    def test_build_messages(self, tool_history):
        messages = AnthropicModelClient.build_messages("Route please", tool_history)
        assert messages[0] == {"role": "user", "content": "Route please"}
        assert messages[1]["content"][0] == {
            "type": "tool_use", "id": "call_abc", "name": "getWeatherConditions",
            "input": {"lat": 34.1, "lng": -118.3},
        }
        assert messages[2]["role"] == "user"
        assert messages[2]["content"][0]["tool_use_id"] == "call_abc"
        assert messages[2]["content"][0]["is_error"] is False
        assert messages[3] == {"role": "user", "content": "Please fix your answer."}

    def test_non_object_arguments_are_replayed(self):
        call = ToolCall(id="call_raw", name="getWeatherConditions", arguments='{"lat": 1,')
        messages = AnthropicModelClient.build_messages("Route please", [
            Message(role=MessageRole.ASSISTANT, tool_call=call),
        ])
        assert messages[1]["content"][0]["input"] == {"_raw": '{"lat": 1,'}

    def test_empty_final_answer_is_replayed_with_placeholder(self):
        messages = AnthropicModelClient.build_messages("Route please", [
            Message(role=MessageRole.ASSISTANT, content=""),
            Message(role=MessageRole.USER, content="Reply again with JSON."),
        ])
        assert messages[1] == {"role": "assistant", "content": EMPTY_REPLY}
        assert messages[2]["content"] == "Reply again with JSON."

    def test_parse_tool_use(self):
        response = anthropic_response(
            SimpleNamespace(type="text", text="Let me check the weather."),
            SimpleNamespace(type="tool_use", id="toolu_1", name="getWeatherConditions",
                            input={"lat": 34.1, "lng": -118.3}),
        )
        parsed = AnthropicModelClient.parse_response(response)
        assert isinstance(parsed, ToolCall)
        assert parsed.id == "toolu_1"
        assert parsed.arguments == {"lat": 34.1, "lng": -118.3}

    def test_parse_text(self):
        response = anthropic_response(
            SimpleNamespace(type="text", text='{"eta": '),
            SimpleNamespace(type="text", text='"5 minutes"}'),
        )
        parsed = AnthropicModelClient.parse_response(response)
        assert isinstance(parsed, Final)
        assert parsed.raw_output == '{"eta": "5 minutes"}'

    @pytest.mark.asyncio
    async def test_send_declares_tools(self, flow_registry):
        client = AnthropicModelClient(LLMConfig(api_key="test-key", transport_retries=1))
        fake = MagicMock()
        fake.messages.create = AsyncMock(return_value=anthropic_response(
            SimpleNamespace(type="text", text="{}"),
        ))
        client._client = fake

        tools = flow_registry.tools.list_all()
        reply = await client.send("Route please", tools, [])

        assert isinstance(reply, Final)
        kwargs = fake.messages.create.call_args.kwargs
        assert kwargs["tools"][0]["name"] == "getWeatherConditions"
        assert kwargs["tools"][0]["input_schema"]["required"] == ["lat", "lng"]
        assert kwargs["tool_choice"]["disable_parallel_tool_use"] is True
        assert kwargs["messages"] == [{"role": "user", "content": "Route please"}]

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self):
        client = AnthropicModelClient(LLMConfig(api_key="test-key", transport_retries=2))
        fake = MagicMock()
        fake.messages.create = AsyncMock(side_effect=[
            anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com")),
            anthropic_response(SimpleNamespace(type="text", text="{}")),
        ])
        client._client = fake

        reply = await client.send("Route please", [], [])
        assert reply.raw_output == "{}"
        assert fake.messages.create.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        client = AnthropicModelClient(LLMConfig(api_key="test-key", transport_retries=3))
        fake = MagicMock()
        fake.messages.create = AsyncMock(side_effect=KeyError("content"))
        client._client = fake

        with pytest.raises(ModelTransportError) as exc:
            await client.send("Route please", [], [])
        assert exc.value.details["provider"] == "anthropic"
        assert fake.messages.create.await_count == 1


# ══════════════════════════════════════════════════════════════
#  OpenAI
# ══════════════════════════════════════════════════════════════

class TestOpenAIClient:
    def test_build_messages(self, tool_history):
        messages = OpenAIModelClient.build_messages("Route please", tool_history)
        call = messages[1]["tool_calls"][0]
        assert call["id"] == "call_abc"
        assert json.loads(call["function"]["arguments"]) == {"lat": 34.1, "lng": -118.3}
        assert messages[2] == {"role": "tool", "tool_call_id": "call_abc",
                               "content": '{"conditions": "Sunny"}'}
        assert messages[3]["role"] == "user"

    def test_malformed_arguments_are_replayed_verbatim(self):
        call = ToolCall(id="call_raw", name="getWeatherConditions", arguments='{"lat": 1,')
        messages = OpenAIModelClient.build_messages("Route please", [
            Message(role=MessageRole.ASSISTANT, tool_call=call),
        ])
        assert messages[1]["tool_calls"][0]["function"]["arguments"] == '{"lat": 1,'

    def test_parse_tool_call(self):
        function = SimpleNamespace(name="getWeatherConditions", arguments='{"lat": 1, "lng": 2}')
        parsed = OpenAIModelClient.parse_response(openai_response(
            tool_calls=[SimpleNamespace(id="call_1", function=function)],
        ))
        assert isinstance(parsed, ToolCall)
        assert parsed.arguments == {"lat": 1, "lng": 2}

    def test_parse_malformed_arguments(self):
        function = SimpleNamespace(name="getWeatherConditions", arguments='{"lat": 1,')
        parsed = OpenAIModelClient.parse_response(openai_response(
            tool_calls=[SimpleNamespace(id="call_1", function=function)],
        ))
        assert parsed.arguments == '{"lat": 1,'

    def test_parse_text(self):
        parsed = OpenAIModelClient.parse_response(openai_response(content='{"eta": "5 minutes"}'))
        assert isinstance(parsed, Final)
        assert parsed.raw_output == '{"eta": "5 minutes"}'

    @pytest.mark.asyncio
    async def test_send_declares_function_tools(self, flow_registry):
        client = OpenAIModelClient(LLMConfig(provider="openai", model="gpt-4o", api_key="k",
                                             transport_retries=1))
        fake = MagicMock()
        fake.chat.completions.create = AsyncMock(return_value=openai_response(content="{}"))
        client._client = fake

        await client.send("Route please", flow_registry.tools.list_all(), [])

        kwargs = fake.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["tools"][0]["function"]["name"] == "getWeatherConditions"
        assert kwargs["parallel_tool_calls"] is False


# ══════════════════════════════════════════════════════════════
#  Mock client and factory
# ══════════════════════════════════════════════════════════════

class TestMockClient:
    @pytest.mark.asyncio
    async def test_replays_script(self):
        client = MockModelClient(script=[Final(raw_output="one")])
        client.queue(Final(raw_output="two"))
        assert (await client.send("p", [], [])).raw_output == "one"
        assert (await client.send("p", [], [])).raw_output == "two"
        assert client.call_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_script(self):
        client = MockModelClient()
        with pytest.raises(ModelTransportError):
            await client.send("p", [], [])

    @pytest.mark.asyncio
    async def test_history_snapshot(self, tool_history):
        client = MockModelClient(script=[Final(raw_output="ok")])
        await client.send("p", [], tool_history)
        tool_history.append(Message(role=MessageRole.USER, content="later"))
        assert len(client.requests[0]["history"]) == 3

    @pytest.mark.asyncio
    async def test_async_responder(self):
        async def responder(prompt, tools, history):
            return Final(raw_output=prompt.upper())

        client = MockModelClient(responder=responder)
        assert (await client.send("eta", [], [])).raw_output == "ETA"


class TestFactory:
    def test_mock_provider(self):
        assert isinstance(create_model_client(LLMConfig(provider="mock")), MockModelClient)

    def test_missing_api_key_falls_back_to_mock(self):
        client = create_model_client(LLMConfig(provider="anthropic", api_key=""))
        assert isinstance(client, MockModelClient)

    def test_vendors(self):
        assert isinstance(create_model_client(LLMConfig(provider="anthropic", api_key="k")),
                          AnthropicModelClient)
        assert isinstance(create_model_client(LLMConfig(provider="openai", api_key="k")),
                          OpenAIModelClient)

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown LLM provider"):
            create_model_client(LLMConfig(provider="cohere", api_key="k"))
