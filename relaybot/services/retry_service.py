"""Rebuild a concrete decision for a retry request.

Resolution order:
    1. an explicit provider/model named in the modification text rewrites the base decision
    2. a genuine quote of an earlier command is re-resolved and routed again, once
    3. the stored last command, with the modification text comma-appended to its prompt
       (for a stored plan: the selected steps, modifications on the first one)
"""

import copy
import re
from dataclasses import dataclass
from typing import Optional

from relaybot.errors import RetryStateError
from relaybot.logging_config import get_logger
from relaybot.schemas.engine import TRIGGER_RE, CommandRecord, Decision, NormalizedRequest
from relaybot.services.intent_router import parse_retry
from relaybot.services.quoted_media_service import merge_caption
from relaybot.services.result import Result

logger = get_logger("retry_service")

RETRY_ACK = "🔄 קיבלתי! מריץ שוב את הפקודה האחרונה..."

PROVIDER_PATTERNS = {
    "openai": re.compile(r"openai|אוופנאי|אופן איי", re.I),
    "gemini": re.compile(r"gemini|ג׳מיני|גמיני|גימיני", re.I),
    "grok": re.compile(r"grok|גרוק", re.I),
    "sora": re.compile(r"sora|סורה", re.I),
    "veo": re.compile(r"veo\s*3?(?:\.\d+)?|veo|ויו|וֶאו", re.I),
    "kling": re.compile(r"kling|קלינג", re.I),
}
SORA_PRO_RE = re.compile(r"sora\s*2\s*pro|sora-2-pro|סורה\s*2\s*פרו|סורה-?2-?פרו", re.I)
SORA_2_RE = re.compile(r"sora\s*2(?!\s*pro)|sora-2(?!-pro)|סורה\s*2(?!\s*פרו)|סורה-?2(?!-?פרו)", re.I)

PROMPT_KEYS = ("prompt", "text")

STEP_NUMBERS_RE = re.compile(r"(?:שלבים|שלב|steps?)\s*(\d+(?:\s*(?:,|ו|and)\s*\d+)*)", re.I)


def detect_providers(text: Optional[str]) -> set[str]:
    if not text or not text.strip():
        return set()
    return {name for name, pattern in PROVIDER_PATTERNS.items() if pattern.search(text)}


def _sora_model(text: str, args: dict) -> str:
    if SORA_PRO_RE.search(text):
        return "sora-2-pro"
    if SORA_2_RE.search(text):
        return "sora-2"
    return args.get("model") or "sora-2"


def apply_provider_override(text: Optional[str], decision: Decision) -> Optional[Decision]:
    """Swap the provider of ``decision`` to the one named in ``text``.

    Checked in a fixed priority order per tool family; returns None when nothing applies.
    """
    wanted = detect_providers(text)
    if not wanted or not decision.tool:
        return None

    tool = decision.tool
    args = copy.deepcopy(decision.args)

    def override(new_tool: str, label: str, new_args: Optional[dict] = None) -> Decision:
        return Decision(tool=new_tool, args=new_args if new_args is not None else args, reason=f"Retry override → {label}")

    if tool.endswith("_image") and not tool.endswith("_image_edit"):
        for provider, label in (("openai", "OpenAI image"), ("gemini", "Gemini image"), ("grok", "Grok image")):
            if provider in wanted:
                return override(f"{provider}_image", label)

    if tool.endswith("_image_to_video"):
        if "sora" in wanted:
            return override("sora_image_to_video", "Sora image-to-video", {**args, "model": _sora_model(text, args)})
        if "veo" in wanted:
            return override("veo3_image_to_video", "Veo image-to-video")
        if "kling" in wanted:
            return override("kling_image_to_video", "Kling image-to-video")
    elif tool.endswith("_video") or tool == "kling_text_to_video":
        if "sora" in wanted:
            return override("sora_video", "Sora text-to-video", {**args, "model": _sora_model(text, args)})
        if "veo" in wanted:
            return override("veo3_video", "Veo text-to-video")
        if "kling" in wanted:
            return override("kling_text_to_video", "Kling text-to-video")

    if tool.endswith("_chat"):
        for provider, label in (("openai", "OpenAI chat"), ("gemini", "Gemini chat"), ("grok", "Grok chat")):
            if provider in wanted:
                return override(f"{provider}_chat", label)

    return None


def append_modifications(args: dict, modifications: str, create: bool = True) -> dict:
    merged = copy.deepcopy(args)
    if not modifications:
        return merged
    for key in PROMPT_KEYS:
        if merged.get(key):
            merged[key] = f"{merged[key]}, {modifications}"
            return merged
    if create:
        merged["prompt"] = modifications
    return merged


def extract_step_numbers(modifications: str) -> tuple[list[int], str]:
    """Pull "step 2" / "שלבים 1 ו3" out of the modification text.

    Returns the 1-based step numbers and the remaining text.
    """
    match = STEP_NUMBERS_RE.search(modifications or "")
    if not match:
        return [], modifications
    numbers = [int(n) for n in re.findall(r"\d+", match.group(1))]
    rest = (modifications[: match.start()] + modifications[match.end():]).strip(" ,")
    return numbers, rest


def select_plan_steps(
    plan: list[dict],
    step_numbers: Optional[list[int]] = None,
    step_tools: Optional[list[str]] = None,
) -> list[dict]:
    """Filter a stored plan by 1-based step numbers, else by tool name fragments."""
    if step_numbers:
        return [step for index, step in enumerate(plan, start=1) if index in step_numbers]
    if step_tools:
        return [
            step
            for step in plan
            if any(wanted in (step.get("tool") or "") or (step.get("tool") or "") in wanted for wanted in step_tools)
        ]
    return list(plan)


def describe_plan(plan: list[dict]) -> str:
    return ", ".join(f"{index}. {step.get('tool') or 'unknown'}" for index, step in enumerate(plan, start=1))


def request_with_media(
    request: NormalizedRequest,
    *,
    prompt: Optional[str] = None,
    image_url: Optional[str] = None,
    video_url: Optional[str] = None,
    audio_url: Optional[str] = None,
) -> NormalizedRequest:
    update = {
        "hasImage": bool(image_url),
        "hasVideo": bool(video_url),
        "hasAudio": bool(audio_url),
        "imageUrl": image_url,
        "videoUrl": video_url,
        "audioUrl": audio_url,
        "quotedContext": None,
    }
    if prompt is not None:
        update["text"] = f"# {prompt}" if prompt else ""
    return request.model_copy(update=update)


@dataclass
class RetryResolution:
    decision: Decision
    request: NormalizedRequest
    source: str  # override, quote, stored
    rerouted: bool = False


class RetryResolver:
    def __init__(self, store, quoted_resolver, router):
        self.store = store
        self.quoted_resolver = quoted_resolver
        self.router = router

    async def resolve(self, retry_decision: Decision, request: NormalizedRequest) -> Result[RetryResolution]:
        modifications = retry_decision.args.get("modifications")
        if modifications is None:
            modifications = parse_retry(request.prompt) or ""
        modifications = modifications.strip()

        if detect_providers(modifications):
            base = await self._base_for_override(request)
            if base is not None and base.ok:
                overridden = apply_provider_override(modifications, base.value.decision)
                if overridden is not None:
                    logger.info(
                        overridden.reason,
                        extra={"context": {"chat_id": request.chatId, "from": base.value.decision.tool}},
                    )
                    return Result.success(
                        RetryResolution(overridden, base.value.request, "override", rerouted=base.value.rerouted)
                    )

        if request.quotedContext is not None:
            return await self._from_quote(request, modifications)

        return self._from_store(request, modifications, retry_decision.args)

    async def _base_for_override(self, request: NormalizedRequest) -> Optional[Result[RetryResolution]]:
        record = self.store.load(request.chatId)
        if record is not None:
            return Result.success(RetryResolution(record.to_decision(), self._stored_request(request, record), "stored"))
        if request.quotedContext is not None:
            return await self._from_quote(request, "")
        return None

    def _stored_request(self, request: NormalizedRequest, record: CommandRecord) -> NormalizedRequest:
        return request_with_media(
            request,
            image_url=record.imageUrl,
            video_url=record.videoUrl,
            audio_url=record.audioUrl,
        )

    async def _from_quote(self, request: NormalizedRequest, modifications: str) -> Result[RetryResolution]:
        quoted = request.quotedContext
        if quoted.type in ("textMessage", "extendedTextMessage") and TRIGGER_RE.match(quoted.text.strip()):
            prompt = merge_caption(quoted.text, modifications)
            rebuilt = request_with_media(request, prompt=prompt)
        else:
            resolution = await self.quoted_resolver.resolve(quoted, modifications, request.chatId)
            if resolution.error:
                return Result.failure(resolution.error, "media_error")
            rebuilt = request_with_media(
                request,
                prompt=resolution.prompt.strip(),
                image_url=resolution.imageUrl,
                video_url=resolution.videoUrl,
                audio_url=resolution.audioUrl,
            )

        decision = await self.router.route(rebuilt)
        if decision.tool == "retry_last_command":
            # A single extra routing pass only.
            return Result.from_error(RetryStateError("quoted retry routed to retry again"))
        return Result.success(RetryResolution(decision, rebuilt, "quote", rerouted=True))

    def _from_store(
        self, request: NormalizedRequest, modifications: str, retry_args: Optional[dict] = None
    ) -> Result[RetryResolution]:
        record = self.store.load(request.chatId)
        if record is None:
            logger.info("Retry requested with no stored command", extra={"context": {"chat_id": request.chatId}})
            return Result.from_error(RetryStateError("no stored command"))

        if record.isMultiStep and record.plan:
            retry_args = retry_args or {}
            step_numbers = retry_args.get("step_numbers")
            if not step_numbers:
                step_numbers, modifications = extract_step_numbers(modifications)
            steps = select_plan_steps(record.plan, step_numbers, retry_args.get("step_tools"))
            if not steps:
                return Result.from_error(
                    RetryStateError(
                        "no plan step matched the selection",
                        user_message=f"לא נמצאו שלבים תואמים. השלבים הזמינים: {describe_plan(record.plan)}",
                    )
                )
            plan = [copy.deepcopy(step) for step in steps]
            # Modifications apply to the first selected step only.
            plan[0]["args"] = append_modifications(plan[0].get("args") or {}, modifications, create=False)
            logger.info(
                f"Retrying {len(plan)} of {len(record.plan)} plan steps",
                extra={"context": {"chat_id": request.chatId}},
            )
            decision = Decision(tool="multi_step", args={"plan": plan}, reason="Retry of stored plan")
        else:
            decision = Decision(
                tool=record.tool,
                args=append_modifications(record.args, modifications),
                reason="Retry of stored command",
            )
        return Result.success(RetryResolution(decision, self._stored_request(request, record), "stored"))
