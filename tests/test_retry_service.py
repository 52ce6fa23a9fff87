import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from relaybot.schemas.engine import Decision, NormalizedRequest
from relaybot.services.command_store import LastCommandStore
from relaybot.services.intent_router import parse_retry
from relaybot.services.message_normalizer import build_quoted_context
from relaybot.services.quoted_media_service import QuotedMediaResolver
from relaybot.services.retry_service import (
    RetryResolver,
    append_modifications,
    apply_provider_override,
    detect_providers,
    extract_step_numbers,
    select_plan_steps,
)

NOTHING_TO_RETRY = "אין פקודה קודמת לחזור עליה. זו הפעם הראשונה שאתה מבקש משהו."


def _retry_request(text: str, quoted: dict | None = None) -> NormalizedRequest:
    return NormalizedRequest(
        text=text,
        chatId="chat@c.us",
        messageId="M2",
        quotedContext=build_quoted_context({"stanzaId": "Q1", **quoted}) if quoted else None,
    )


def _retry_decision(request: NormalizedRequest) -> Decision:
    return Decision(tool="retry_last_command", args={"modifications": parse_retry(request.prompt)})


@pytest.fixture
def router():
    fake = Mock()
    fake.route = AsyncMock(return_value=Decision(tool="gemini_image", args={"prompt": "rerouted"}))
    return fake


@pytest.fixture
def store(session_factory):
    return LastCommandStore(session_factory)


@pytest.fixture
def resolver(store, transport, router):
    return RetryResolver(store, QuotedMediaResolver(transport, thumbnail_store=Mock(return_value=None)), router)


class TestParseRetry:
    @pytest.mark.parametrize(
        "prompt, expected",
        [
            ("שוב", ""),
            ("נסה שוב", ""),
            ("עוד פעם, אבל בלילה", "אבל בלילה"),
            ("try again with more color", "with more color"),
            ("Retry", ""),
        ],
    )
    def test_retry_phrases(self, prompt, expected):
        assert parse_retry(prompt) == expected

    @pytest.mark.parametrize("prompt", ["שובר גלים", "draw again a cat", "a cat"])
    def test_not_retry(self, prompt):
        assert parse_retry(prompt) is None


class TestAppendModifications:
    def test_appends_to_prompt(self):
        assert append_modifications({"prompt": "a cat"}, "אבל עם כובע") == {"prompt": "a cat, אבל עם כובע"}

    def test_appends_to_text_when_no_prompt(self):
        assert append_modifications({"text": "hello"}, "louder") == {"text": "hello, louder"}

    def test_creates_prompt_when_missing(self):
        assert append_modifications({}, "louder") == {"prompt": "louder"}

    def test_does_not_mutate_input(self):
        args = {"prompt": "a cat"}
        append_modifications(args, "blue")
        assert args == {"prompt": "a cat"}


class TestProviderOverride:
    def test_detects_hebrew_and_english(self):
        assert detect_providers("עם גרוק") == {"grok"}
        assert detect_providers("with OpenAI please") == {"openai"}
        assert detect_providers("") == set()

    def test_image_family(self):
        result = apply_provider_override("עם openai", Decision(tool="gemini_image", args={"prompt": "a cat"}))
        assert result.tool == "openai_image"
        assert result.args == {"prompt": "a cat"}
        assert result.reason == "Retry override → OpenAI image"

    def test_video_family_sora_pro(self):
        result = apply_provider_override("with sora 2 pro", Decision(tool="veo3_video", args={"prompt": "waves"}))
        assert result.tool == "sora_video"
        assert result.args["model"] == "sora-2-pro"

    def test_video_family_plain_sora(self):
        result = apply_provider_override("with sora 2", Decision(tool="kling_text_to_video", args={"prompt": "x"}))
        assert result.tool == "sora_video"
        assert result.args["model"] == "sora-2"

    def test_image_to_video_family(self):
        result = apply_provider_override("קלינג", Decision(tool="veo3_image_to_video", args={"prompt": "x"}))
        assert result.tool == "kling_image_to_video"

    def test_chat_family(self):
        result = apply_provider_override("with grok", Decision(tool="openai_chat", args={"prompt": "hi"}))
        assert result.tool == "grok_chat"

    def test_no_matching_family(self):
        assert apply_provider_override("with openai", Decision(tool="text_to_speech", args={"text": "x"})) is None

    def test_args_are_copied(self):
        original = Decision(tool="gemini_image", args={"prompt": "a cat", "opts": {"size": 1}})
        result = apply_provider_override("openai", original)
        result.args["opts"]["size"] = 2
        assert original.args["opts"]["size"] == 1


class TestResolveFromStore:
    def test_modifications_are_merged(self, resolver, store):
        store.save("chat@c.us", Decision(tool="gemini_image", args={"prompt": "a cat"}))
        request = _retry_request("# נסה שוב אבל עם כובע")

        result = asyncio.run(resolver.resolve(_retry_decision(request), request))

        assert result.ok is True
        assert result.value.decision.tool == "gemini_image"
        assert result.value.decision.args == {"prompt": "a cat, אבל עם כובע"}
        assert result.value.source == "stored"
        assert result.value.rerouted is False

    def test_stored_media_is_restored(self, resolver, store):
        stored_request = NormalizedRequest(
            text="# blue", hasImage=True, imageUrl="https://files.example/cat.jpg", chatId="chat@c.us"
        )
        store.save("chat@c.us", Decision(tool="image_edit", args={"prompt": "blue"}), stored_request)
        request = _retry_request("# שוב")

        result = asyncio.run(resolver.resolve(_retry_decision(request), request))

        assert result.value.request.imageUrl == "https://files.example/cat.jpg"
        assert result.value.request.hasImage is True

    def test_nothing_to_retry(self, resolver):
        request = _retry_request("# שוב")
        result = asyncio.run(resolver.resolve(_retry_decision(request), request))
        assert result.ok is False
        assert result.error == NOTHING_TO_RETRY

    def test_multi_step_plan_is_replayed(self, resolver, store):
        plan = [
            {"tool": "openai_chat", "args": {"prompt": "write a slogan"}},
            {"tool": "create_poll", "args": {"question": "Which?", "options": ["a", "b"]}},
        ]
        store.save("chat@c.us", Decision(tool="multi_step", args={"plan": plan}), plan=plan)
        request = _retry_request("# שוב בקצרה")

        result = asyncio.run(resolver.resolve(_retry_decision(request), request))

        decision = result.value.decision
        assert decision.tool == "multi_step"
        assert decision.args["plan"][0]["args"]["prompt"] == "write a slogan, בקצרה"
        assert "prompt" not in decision.args["plan"][1]["args"]

    def test_modifications_touch_only_first_step(self, resolver, store):
        plan = [
            {"tool": "openai_chat", "args": {"prompt": "write a slogan"}},
            {"tool": "openai_image", "args": {"prompt": "a poster"}},
        ]
        store.save("chat@c.us", Decision(tool="multi_step", args={"plan": plan}), plan=plan)
        request = _retry_request("# שוב בקצרה")

        result = asyncio.run(resolver.resolve(_retry_decision(request), request))

        steps = result.value.decision.args["plan"]
        assert steps[0]["args"]["prompt"] == "write a slogan, בקצרה"
        assert steps[1]["args"]["prompt"] == "a poster"

    def test_step_numbers_in_text_select_steps(self, resolver, store):
        plan = [
            {"tool": "openai_chat", "args": {"prompt": "write a slogan"}},
            {"tool": "openai_image", "args": {"prompt": "a poster"}},
        ]
        store.save("chat@c.us", Decision(tool="multi_step", args={"plan": plan}), plan=plan)
        request = _retry_request("# שוב שלב 2 בכחול")

        result = asyncio.run(resolver.resolve(_retry_decision(request), request))

        assert result.value.decision.args["plan"] == [{"tool": "openai_image", "args": {"prompt": "a poster, בכחול"}}]

    def test_step_tools_select_steps(self, resolver, store):
        plan = [
            {"tool": "openai_chat", "args": {"prompt": "write a slogan"}},
            {"tool": "create_poll", "args": {"question": "Which?", "options": ["a", "b"]}},
        ]
        store.save("chat@c.us", Decision(tool="multi_step", args={"plan": plan}), plan=plan)
        request = _retry_request("# שוב")
        decision = Decision(tool="retry_last_command", args={"modifications": "", "step_tools": ["poll"]})

        result = asyncio.run(resolver.resolve(decision, request))

        assert [step["tool"] for step in result.value.decision.args["plan"]] == ["create_poll"]

    def test_unknown_step_lists_available_steps(self, resolver, store):
        plan = [{"tool": "openai_chat", "args": {"prompt": "write a slogan"}}]
        store.save("chat@c.us", Decision(tool="multi_step", args={"plan": plan}), plan=plan)
        request = _retry_request("# שוב")
        decision = Decision(tool="retry_last_command", args={"modifications": "", "step_numbers": [4]})

        result = asyncio.run(resolver.resolve(decision, request))

        assert result.ok is False
        assert result.error == "לא נמצאו שלבים תואמים. השלבים הזמינים: 1. openai_chat"


class TestResolveFromQuote:
    def test_quoted_command_text_is_rerouted(self, resolver, router):
        request = _retry_request(
            "# שוב with a hat",
            quoted={"typeMessage": "textMessage", "textMessage": "# a cat"},
        )

        result = asyncio.run(resolver.resolve(_retry_decision(request), request))

        assert result.ok is True
        assert result.value.source == "quote"
        assert result.value.rerouted is True
        routed_request = router.route.await_args.args[0]
        assert routed_request.prompt == "a cat, with a hat"
        assert routed_request.quotedContext is None

    def test_quote_takes_precedence_over_store(self, resolver, store, router):
        store.save("chat@c.us", Decision(tool="openai_chat", args={"prompt": "old"}))
        request = _retry_request("# שוב", quoted={"typeMessage": "textMessage", "textMessage": "# a dog"})

        result = asyncio.run(resolver.resolve(_retry_decision(request), request))

        assert result.value.decision.tool == "gemini_image"
        router.route.assert_awaited_once()

    def test_second_retry_is_refused(self, resolver, router):
        router.route = AsyncMock(return_value=Decision(tool="retry_last_command", args={"modifications": ""}))
        request = _retry_request("# שוב", quoted={"typeMessage": "textMessage", "textMessage": "# שוב"})

        result = asyncio.run(resolver.resolve(_retry_decision(request), request))

        assert result.ok is False
        router.route.assert_awaited_once()

    def test_unresolvable_quoted_media(self, resolver):
        request = _retry_request("# שוב", quoted={"typeMessage": "imageMessage"})
        result = asyncio.run(resolver.resolve(_retry_decision(request), request))
        assert result.ok is False
        assert result.error_code == "media_error"


class TestOverridePrecedence:
    def test_override_beats_store_and_quote(self, resolver, store, router):
        store.save("chat@c.us", Decision(tool="gemini_image", args={"prompt": "a cat"}))
        request = _retry_request(
            "# שוב עם openai",
            quoted={"typeMessage": "imageMessage", "downloadUrl": "https://files.example/q.jpg"},
        )

        result = asyncio.run(resolver.resolve(_retry_decision(request), request))

        assert result.value.source == "override"
        assert result.value.decision.tool == "openai_image"
        assert result.value.decision.args == {"prompt": "a cat"}
        router.route.assert_not_called()

    def test_override_uses_quote_when_store_is_empty(self, resolver, router):
        request = _retry_request(
            "# again with grok",
            quoted={"typeMessage": "imageMessage", "downloadUrl": "https://files.example/q.jpg"},
        )

        result = asyncio.run(resolver.resolve(_retry_decision(request), request))

        assert result.value.source == "override"
        assert result.value.decision.tool == "grok_image"
        assert result.value.request.imageUrl == "https://files.example/q.jpg"
        assert result.value.rerouted is True

    def test_override_without_matching_family_falls_back(self, resolver, store):
        store.save("chat@c.us", Decision(tool="text_to_speech", args={"text": "shalom"}))
        request = _retry_request("# שוב עם openai")

        result = asyncio.run(resolver.resolve(_retry_decision(request), request))

        assert result.value.source == "stored"
        assert result.value.decision.tool == "text_to_speech"
        assert result.value.decision.args == {"text": "shalom, עם openai"}


class TestPlanSelection:
    def test_extract_step_numbers(self):
        assert extract_step_numbers("שלבים 1 ו3 בצבע אחר") == ([1, 3], "בצבע אחר")
        assert extract_step_numbers("step 2") == ([2], "")
        assert extract_step_numbers("בצבע אחר") == ([], "בצבע אחר")

    def test_select_by_numbers_wins_over_tools(self):
        plan = [{"tool": "openai_chat"}, {"tool": "create_poll"}]
        assert select_plan_steps(plan, [1], ["poll"]) == [{"tool": "openai_chat"}]

    def test_no_filter_keeps_plan(self):
        plan = [{"tool": "openai_chat"}, {"tool": "create_poll"}]
        assert select_plan_steps(plan) == plan
