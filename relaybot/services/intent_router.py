"""Heuristic intent router: NormalizedRequest -> Decision.

Keyword rules in Hebrew and English, with a random pick among equivalent providers. An LLM
pass can be enabled through ``INTENT_ROUTER_USE_LLM`` and falls back to the heuristic on any
failure.
"""

import asyncio
import json
import random
import re
from typing import Collection, Optional

from relaybot.config import _is_env_enabled, settings
from relaybot.logging_config import get_logger
from relaybot.schemas.engine import Decision, NormalizedRequest

logger = get_logger("intent_router")

RETRY_RE = re.compile(r"^(?:נסה שוב|תנסה שוב|עוד פעם|שוב|try again|retry|again)(?=$|[\s,.:!-])[\s,.:!-]*(.*)$", re.I | re.S)

IMAGE_VIDEO_LIKE_RE = re.compile(r"video|וידאו|סרט|אנימציה|animate|הנפש|להנפיש|תזיז|motion|קליפ")
IMAGE_LIKE_RE = re.compile(r"image|תמונה|ציור|תצלום|לוגו|poster|איור|illustration|render|צייר|ציירי")
VIDEO_LIKE_RE = re.compile(r"video|וידאו|סרט|אנימציה|קליפ|clip|animate|motion")
TTS_LIKE_RE = re.compile(r"קרא|הקרא|הקריא|הקראת|דיבור|speech|להשמיע")
SUMMARY_RE = re.compile(r"סכם|סיכום|summary|לסכם")

ALLOWED_TOOLS = {
    "gemini_image",
    "openai_image",
    "grok_image",
    "veo3_video",
    "kling_text_to_video",
    "veo3_image_to_video",
    "kling_image_to_video",
    "video_to_video",
    "image_edit",
    "text_to_speech",
    "gemini_chat",
    "openai_chat",
    "grok_chat",
    "chat_summary",
    "creative_voice_processing",
    "retry_last_command",
    "deny_unauthorized",
    "ask_clarification",
}


def pick_random(options: list[str]) -> str:
    return random.choice(options)


def pick_tool(options: list[str], available: Optional[Collection[str]] = None) -> str:
    """Random pick among equivalent tools, limited to the registered ones when any of them is."""
    if available is not None:
        registered = [name for name in options if name in available]
        if registered:
            options = registered
    return pick_random(options)


def parse_retry(prompt: str) -> Optional[str]:
    """Return the modification text of a retry request, or None if it is not one."""
    match = RETRY_RE.match(prompt.strip())
    if not match:
        return None
    return match.group(1).strip()


def _deny(feature: str, reason: str) -> Decision:
    return Decision(tool="deny_unauthorized", args={"feature": feature}, reason=reason)


def route_heuristic(request: NormalizedRequest, available: Optional[Collection[str]] = None) -> Decision:
    text = request.text.strip()
    prompt = request.prompt
    auth = request.authorizations

    if prompt:
        modifications = parse_retry(prompt)
        if modifications is not None:
            return Decision(
                tool="retry_last_command",
                args={"modifications": modifications},
                reason="Retry request",
            )

    if not text and request.hasAudio:
        if not auth.voice_allowed:
            return _deny("voice", "Voice not allowed")
        return Decision(tool="creative_voice_processing", args={}, reason="Audio message - creative flow")

    if request.hasImage and prompt:
        if not auth.media_creation:
            return _deny("image_edit", "No media creation authorization")
        if IMAGE_VIDEO_LIKE_RE.search(prompt.lower()):
            tool = pick_tool(["veo3_image_to_video", "kling_image_to_video"], available)
            return Decision(tool=tool, args={"prompt": prompt}, reason="Image attached, video-like request")
        service = pick_random(["gemini", "openai"])
        return Decision(tool="image_edit", args={"service": service, "prompt": prompt}, reason="Image attached with prompt")

    if request.hasVideo and prompt:
        if not auth.media_creation:
            return _deny("video_to_video", "No media creation authorization")
        return Decision(tool="video_to_video", args={"prompt": prompt}, reason="Video attached with prompt")

    if prompt:
        lower = prompt.lower()
        if SUMMARY_RE.search(lower):
            return Decision(tool="chat_summary", args={}, reason="User requested summary")

        if TTS_LIKE_RE.search(lower):
            if not auth.media_creation:
                return _deny("text_to_speech", "No media creation authorization")
            return Decision(tool="text_to_speech", args={"text": prompt}, reason="TTS-like request")

        if IMAGE_LIKE_RE.search(lower):
            if not auth.media_creation:
                return _deny("image_generation", "No media creation authorization")
            tool = pick_tool(["gemini_image", "openai_image", "grok_image"], available)
            return Decision(tool=tool, args={"prompt": prompt}, reason="Image-like request")

        if VIDEO_LIKE_RE.search(lower):
            if not auth.media_creation:
                return _deny("video_generation", "No media creation authorization")
            tool = pick_tool(["veo3_video", "kling_text_to_video"], available)
            return Decision(tool=tool, args={"prompt": prompt}, reason="Video-like request")

        tool = pick_tool(["gemini_chat", "openai_chat", "grok_chat"], available)
        return Decision(tool=tool, args={"prompt": prompt}, reason="Default to chat")

    return Decision(tool="ask_clarification", args={}, reason="Unrecognized input")


def validate_decision(payload, available: Optional[Collection[str]] = None) -> Optional[Decision]:
    if not isinstance(payload, dict):
        return None
    tool = payload.get("tool")
    if tool not in ALLOWED_TOOLS:
        return None
    if available is not None and tool != "retry_last_command" and tool not in available:
        return None
    args = payload.get("args") if isinstance(payload.get("args"), dict) else {}
    reason = payload.get("reason") if isinstance(payload.get("reason"), str) else ""
    return Decision(tool=tool, args=args, reason=reason)


ROUTER_SYSTEM_PROMPT = (
    "You are an intent router for a WhatsApp assistant. Choose one tool from: "
    + ", ".join(sorted(ALLOWED_TOOLS))
    + ". Deny media tools with deny_unauthorized when authorizations do not allow them. "
    "Answer with a single JSON object {\"tool\": str, \"args\": object, \"reason\": str}."
)

FENCE_RE = re.compile(r"```[a-zA-Z]*\n([\s\S]*?)\n```")


class IntentRouter:
    def __init__(self, llm=None, use_llm: Optional[bool] = None, available_tools: Optional[Collection[str]] = None):
        self.llm = llm
        if use_llm is None:
            use_llm = _is_env_enabled(settings.intent_router_use_llm, default=False)
        self.use_llm = use_llm and llm is not None
        self.available_tools = set(available_tools) if available_tools is not None else None

    async def route(self, request: NormalizedRequest) -> Decision:
        if self.use_llm:
            # Blocking provider call, kept off the event loop.
            decision = await asyncio.to_thread(self._route_with_llm, request)
            if decision is not None:
                return decision
        return route_heuristic(request, self.available_tools)

    def _route_with_llm(self, request: NormalizedRequest) -> Optional[Decision]:
        payload = request.model_dump(
            mode="json",
            include={"text", "hasImage", "hasVideo", "hasAudio", "chatType", "language", "authorizations"},
        )
        try:
            response = self.llm.generate(
                [
                    {"role": "system", "content": ROUTER_SYSTEM_PROMPT},
                    {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
                ],
                temperature=0.0,
                max_tokens=300,
            )
        except Exception as e:
            logger.warning(f"LLM routing failed, using heuristic: {e}")
            return None

        raw = (response.content or "").strip()
        fence = FENCE_RE.search(raw)
        if fence:
            raw = fence.group(1).strip()
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("LLM router returned non-JSON output", extra={"context": {"raw": raw[:200]}})
            return None
        return validate_decision(parsed, self.available_tools)
