import base64
import json
import secrets
from typing import List, Optional

import httpx

from relaybot.logging_config import get_logger
from relaybot.services.llm.base import LLMProvider, LLMResponse, LLMToolCall
from relaybot.services.media_storage import build_static_url, save_buffer_to_temp_file

logger = get_logger("llm.openai")


def _parse_tool_calls(message: dict) -> List[LLMToolCall]:
    calls = []
    for raw in message.get("tool_calls") or []:
        function = raw.get("function") or {}
        try:
            args = json.loads(function.get("arguments") or "{}")
        except ValueError:
            logger.warning(f"Unparseable tool arguments for {function.get('name')}")
            args = {}
        calls.append(LLMToolCall(id=raw.get("id", ""), name=function.get("name", ""), args=args))
    return calls


class OpenAIProvider(LLMProvider):
    """OpenAI API provider."""

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini", image_model: str = "gpt-image-1"):
        self.api_key = api_key
        self.default_model = default_model
        self.image_model = image_model
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self.images_url = "https://api.openai.com/v1/images/generations"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        tools: Optional[List[dict]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model

        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        with httpx.Client(timeout=timeout) as client:
            response = client.post(self.base_url, headers=self._headers(), json=payload)

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise Exception(f"OpenAI API error: {response.status_code} - {response.text}")

        data = response.json()
        content = ""
        tool_calls: List[LLMToolCall] = []
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
            tool_calls = _parse_tool_calls(message)
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}, tool_calls={len(tool_calls)}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
            tool_calls=tool_calls,
        )

    def generate_image(self, prompt: str, model: Optional[str] = None) -> str:
        if not prompt:
            raise ValueError("prompt is empty")

        with httpx.Client(timeout=120.0) as client:
            response = client.post(
                self.images_url,
                headers=self._headers(),
                json={"model": model or self.image_model, "prompt": prompt, "n": 1},
            )

        if response.status_code != 200:
            logger.error(f"OpenAI image error: {response.text}")
            raise Exception(f"OpenAI image error: {response.status_code} - {response.text}")

        items = response.json().get("data") or []
        if not items:
            raise Exception("OpenAI image response has no data")
        item = items[0]
        if item.get("url"):
            return item["url"]
        if item.get("b64_json"):
            path = save_buffer_to_temp_file(base64.b64decode(item["b64_json"]), f"openai_image_{secrets.token_hex(6)}.png")
            return build_static_url(path.name)
        raise Exception("OpenAI image response has neither url nor b64_json")
