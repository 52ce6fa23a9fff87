import asyncio
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from relaybot.errors import ValidationError
from relaybot.schemas.engine import NormalizedRequest
from relaybot.services.llm import LLMResponse, OpenAIProvider
from relaybot.services.result import Result
from relaybot.services.tool_handlers import (
    CLARIFY_MESSAGE,
    DENY_MESSAGE,
    ProviderHandlers,
    ask_clarification,
    build_default_registry,
    create_poll,
    deny_unauthorized,
    send_location,
)
from relaybot.services.tool_registry import MediaRefs, ToolContext, ToolOutput, ToolRegistry


@pytest.fixture
def context():
    return ToolContext(chat_id="chat@c.us", request=NormalizedRequest(text="# x", chatId="chat@c.us"))


def _run(handler, args, context):
    return asyncio.run(handler(args, MediaRefs(), context))


class TestRegistry:
    def test_register_as_decorator(self, context):
        registry = ToolRegistry()

        @registry.register("echo", description="Echo the prompt")
        async def echo(args, media, ctx):
            return Result.success(ToolOutput(text=args["prompt"]))

        assert "echo" in registry
        assert registry.describe() == {"echo": "Echo the prompt"}
        result = asyncio.run(registry.dispatch("echo", {"prompt": "hi"}, MediaRefs(), context))
        assert result.value.text == "hi"

    def test_unregister(self):
        registry = ToolRegistry()
        registry.register("echo", AsyncMock())
        registry.unregister("echo")
        assert registry.names() == []

    def test_unexpected_exception_is_converted(self, context):
        registry = ToolRegistry()
        registry.register("boom", AsyncMock(side_effect=KeyError("secret internals")))
        result = asyncio.run(registry.dispatch("boom", {}, MediaRefs(), context))
        assert result.ok is False
        assert result.error_code == "tool_error"
        assert "secret internals" not in result.error

    def test_handler_returning_none(self, context):
        registry = ToolRegistry()
        registry.register("nothing", AsyncMock(return_value=None))
        result = asyncio.run(registry.dispatch("nothing", {}, MediaRefs(), context))
        assert result.ok is False


class TestBuiltinHandlers:
    def test_deny(self, context):
        assert _run(deny_unauthorized, {"feature": "voice"}, context).value.text == DENY_MESSAGE

    def test_clarify(self, context):
        assert _run(ask_clarification, {}, context).value.text == CLARIFY_MESSAGE

    def test_poll(self, context):
        result = _run(create_poll, {"question": "Pizza?", "options": ["yes", " no ", ""]}, context)
        assert result.value.poll == {"question": "Pizza?", "options": ["yes", "no"]}

    def test_poll_needs_two_options(self, context):
        with pytest.raises(ValidationError):
            _run(create_poll, {"question": "Pizza?", "options": ["yes"]}, context)

    def test_location(self, context):
        result = _run(send_location, {"latitude": "32.08", "longitude": 34.78, "name": "Tel Aviv"}, context)
        assert result.value.latitude == 32.08
        assert result.value.location_info == "Tel Aviv"

    def test_location_invalid(self, context):
        with pytest.raises(ValidationError):
            _run(send_location, {"latitude": "north"}, context)


class TestProviderHandlers:
    def test_chat_includes_history(self, context):
        provider = Mock()
        provider.generate.return_value = LLMResponse(content="שלום!", model="test")
        context.history = Mock()
        context.history.recent.return_value = [{"role": "user", "content": "hi"}]

        result = _run(ProviderHandlers(provider).chat, {"prompt": "how are you"}, context)

        assert result.value.text == "שלום!"
        messages = provider.generate.call_args.args[0]
        assert messages[1] == {"role": "user", "content": "hi"}
        assert messages[-1] == {"role": "user", "content": "how are you"}

    def test_current_prompt_is_not_repeated(self, context):
        provider = Mock()
        provider.generate.return_value = LLMResponse(content="ok", model="test")
        context.history = Mock()
        context.history.recent.return_value = [
            {"role": "assistant", "content": "earlier answer"},
            {"role": "user", "content": "x"},
        ]

        _run(ProviderHandlers(provider).chat, {"prompt": "x"}, context)

        messages = provider.generate.call_args.args[0]
        assert [m["content"] for m in messages[1:]] == ["earlier answer", "x"]

    def test_chat_requires_prompt(self, context):
        with pytest.raises(ValidationError):
            _run(ProviderHandlers(Mock()).chat, {}, context)

    def test_image_caption_is_prompt(self, context):
        provider = Mock()
        provider.generate_image.return_value = "https://files.example/gen.png"
        result = _run(ProviderHandlers(provider).image, {"prompt": "a cat"}, context)
        assert result.value.image_url == "https://files.example/gen.png"
        assert result.value.image_caption == "a cat"

    def test_summary_without_history(self, context):
        provider = Mock()
        result = _run(ProviderHandlers(provider).summary, {}, context)
        assert result.value.text == "אין עדיין היסטוריה לסכם."
        provider.generate.assert_not_called()


class TestDefaultRegistry:
    @patch("relaybot.services.tool_handlers.settings")
    def test_without_provider(self, mock_settings):
        mock_settings.openai_api_key = None
        registry = build_default_registry()
        assert registry.names() == ["ask_clarification", "create_poll", "deny_unauthorized", "send_location"]

    def test_with_provider(self):
        registry = build_default_registry(Mock())
        assert {"openai_chat", "openai_image", "chat_summary"} <= set(registry.names())


class TestOpenAIProvider:
    @patch("relaybot.services.llm.openai_provider.httpx.Client")
    def test_generate_parses_tool_calls(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(
            status_code=200,
            json=Mock(
                return_value={
                    "model": "gpt-4o-mini",
                    "choices": [
                        {
                            "message": {
                                "content": None,
                                "tool_calls": [
                                    {
                                        "id": "call_1",
                                        "function": {"name": "openai_image", "arguments": '{"prompt": "a cat"}'},
                                    }
                                ],
                            }
                        }
                    ],
                }
            ),
        )

        response = OpenAIProvider("sk-test").generate([{"role": "user", "content": "draw"}])

        assert response.content == ""
        assert response.tool_calls[0].name == "openai_image"
        assert response.tool_calls[0].args == {"prompt": "a cat"}

    @patch("relaybot.services.llm.openai_provider.httpx.Client")
    def test_generate_raises_on_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=500, text="server error")
        with pytest.raises(Exception, match="OpenAI API error: 500"):
            OpenAIProvider("sk-test").generate([{"role": "user", "content": "hi"}])

    @patch("relaybot.services.llm.openai_provider.httpx.Client")
    def test_image_url(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(
            status_code=200, json=Mock(return_value={"data": [{"url": "https://files.example/i.png"}]})
        )
        assert OpenAIProvider("sk-test").generate_image("a cat") == "https://files.example/i.png"
