"""Built-in tool handlers registered in the default dispatch table."""

import asyncio
from typing import Optional

from relaybot.config import settings
from relaybot.errors import ValidationError
from relaybot.logging_config import get_logger
from relaybot.services.llm import LLMProvider, OpenAIProvider
from relaybot.services.result import Result
from relaybot.services.tool_registry import MediaRefs, ToolContext, ToolOutput, ToolRegistry

logger = get_logger("tool_handlers")

DENY_MESSAGE = "🔒 סליחה, אין לך הרשאה להשתמש בתכונה זו. פנה למנהל המערכת."
CLARIFY_MESSAGE = "לא הבנתי מה לעשות. כתוב # ואחריו מה תרצה שאעשה."

CHAT_SYSTEM_PROMPT = "You are a helpful WhatsApp assistant. Answer in the user's language, briefly."
SUMMARY_PROMPT = "Summarize the following WhatsApp conversation in Hebrew, in a few short bullet points."


def _prompt(args: dict) -> str:
    prompt = (args.get("prompt") or args.get("text") or "").strip()
    if not prompt:
        raise ValidationError("missing prompt", user_message="⚠️ חסר טקסט לביצוע הבקשה.")
    return prompt


async def deny_unauthorized(args: dict, media: MediaRefs, context: ToolContext) -> Result[ToolOutput]:
    logger.info(
        "Unauthorized feature request",
        extra={"context": {"chat_id": context.chat_id, "feature": args.get("feature")}},
    )
    return Result.success(ToolOutput(text=DENY_MESSAGE))


async def ask_clarification(args: dict, media: MediaRefs, context: ToolContext) -> Result[ToolOutput]:
    return Result.success(ToolOutput(text=CLARIFY_MESSAGE))


async def create_poll(args: dict, media: MediaRefs, context: ToolContext) -> Result[ToolOutput]:
    question = (args.get("question") or args.get("topic") or "").strip()
    options = [str(option).strip() for option in args.get("options") or [] if str(option).strip()]
    if not question or len(options) < 2:
        raise ValidationError("poll needs a question and two options", user_message="⚠️ לסקר צריך שאלה ולפחות שתי אפשרויות.")
    return Result.success(ToolOutput(poll={"question": question, "options": options[:12]}))


async def send_location(args: dict, media: MediaRefs, context: ToolContext) -> Result[ToolOutput]:
    try:
        latitude = float(args["latitude"])
        longitude = float(args["longitude"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("invalid coordinates", user_message="⚠️ לא התקבלו קואורדינטות תקינות.")
    return Result.success(
        ToolOutput(latitude=latitude, longitude=longitude, location_info=args.get("info") or args.get("name"))
    )


class ProviderHandlers:
    """Handlers backed by an LLM provider."""

    def __init__(self, provider: LLMProvider, name: str = "openai"):
        self.provider = provider
        self.name = name

    async def chat(self, args: dict, media: MediaRefs, context: ToolContext) -> Result[ToolOutput]:
        prompt = _prompt(args)
        messages = [{"role": "system", "content": CHAT_SYSTEM_PROMPT}]
        if context.history is not None:
            previous = context.history.recent(context.chat_id)
            # The current prompt is already the last stored user turn.
            if previous and previous[-1] == {"role": "user", "content": context.request.prompt}:
                previous = previous[:-1]
            messages.extend(previous)
        messages.append({"role": "user", "content": prompt})
        response = await asyncio.to_thread(self.provider.generate, messages)
        return Result.success(ToolOutput(text=response.content))

    async def image(self, args: dict, media: MediaRefs, context: ToolContext) -> Result[ToolOutput]:
        prompt = _prompt(args)
        url = await asyncio.to_thread(self.provider.generate_image, prompt, args.get("model"))
        return Result.success(ToolOutput(image_url=url, image_caption=prompt))

    async def summary(self, args: dict, media: MediaRefs, context: ToolContext) -> Result[ToolOutput]:
        history = context.history.recent(context.chat_id) if context.history is not None else []
        if not history:
            return Result.success(ToolOutput(text="אין עדיין היסטוריה לסכם."))
        transcript = "\n".join(f"{item['role']}: {item['content']}" for item in history)
        response = await asyncio.to_thread(
            self.provider.generate,
            [{"role": "system", "content": SUMMARY_PROMPT}, {"role": "user", "content": transcript}],
        )
        return Result.success(ToolOutput(text=response.content))


def build_default_registry(provider: Optional[LLMProvider] = None) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register("deny_unauthorized", deny_unauthorized, description="Refuse a feature the sender may not use")
    registry.register("ask_clarification", ask_clarification, description="Ask the user to rephrase")
    registry.register("create_poll", create_poll, description="Create a poll with a question and options")
    registry.register("send_location", send_location, description="Send a map location")

    if provider is None and settings.openai_api_key:
        provider = OpenAIProvider(
            settings.openai_api_key,
            default_model=settings.openai_chat_model,
            image_model=settings.openai_image_model,
        )
    if provider is not None:
        handlers = ProviderHandlers(provider)
        registry.register("openai_chat", handlers.chat, description="Answer a question with a chat model")
        registry.register("openai_image", handlers.image, description="Generate an image from a prompt")
        registry.register("chat_summary", handlers.summary, description="Summarize the recent conversation")
    else:
        logger.warning("OPENAI_API_KEY not set; chat and image tools are not registered")
    return registry
