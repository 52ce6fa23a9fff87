"""Function-calling agent that proposes follow-up tool calls."""

import asyncio
import json
from typing import Optional

from relaybot.logging_config import get_logger
from relaybot.services.execution_loop import Agent, AgentTurn, ToolCall, ToolOutcome
from relaybot.services.llm import LLMProvider
from relaybot.services.tool_registry import ToolContext, ToolRegistry

logger = get_logger("agent_service")

AGENT_SYSTEM_PROMPT = (
    "You are a WhatsApp assistant that completes the user's request with the available tools. "
    "A first tool has already run; its results follow. Call further tools only when the request "
    "clearly needs them, and never repeat a successful creation tool. When done, answer with a short "
    "final message in the user's language."
)

EXCLUDED_FROM_AGENT = {"deny_unauthorized", "ask_clarification"}


def _tool_schema(name: str, description: str) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description or name,
            "parameters": {
                "type": "object",
                "properties": {"prompt": {"type": "string", "description": "Instruction for the tool"}},
                "additionalProperties": True,
            },
        },
    }


def _outcome_summary(outcome: ToolOutcome) -> dict:
    if not outcome.result.ok:
        return {"tool": outcome.call.name, "success": False, "error": outcome.result.error}
    output = outcome.result.value
    return {
        "tool": outcome.call.name,
        "success": True,
        "text": output.text,
        "image": bool(output.image_url),
        "video": bool(output.video_url),
        "audio": bool(output.audio_url),
    }


class OpenAIAgent(Agent):
    def __init__(self, provider: LLMProvider, registry: ToolRegistry, model: Optional[str] = None):
        self.provider = provider
        self.registry = registry
        self.model = model

    def tools(self) -> list[dict]:
        return [
            _tool_schema(name, description)
            for name, description in sorted(self.registry.describe().items())
            if name not in EXCLUDED_FROM_AGENT
        ]

    async def next_turn(self, context: ToolContext, outcomes: list[ToolOutcome]) -> AgentTurn:
        messages = [
            {"role": "system", "content": AGENT_SYSTEM_PROMPT},
            {"role": "user", "content": context.request.prompt},
            {
                "role": "user",
                "content": "Tool results so far: "
                + json.dumps([_outcome_summary(o) for o in outcomes], ensure_ascii=False),
            },
        ]
        response = await asyncio.to_thread(
            self.provider.generate, messages, self.model, 0.3, 800, self.tools()
        )

        calls = [ToolCall(call.name, call.args) for call in response.tool_calls if call.name in self.registry]
        unknown = [call.name for call in response.tool_calls if call.name not in self.registry]
        if unknown:
            logger.warning(f"Agent proposed unknown tools: {unknown}")
        if calls:
            return AgentTurn(calls=calls)
        return AgentTurn(text=response.content or None)
