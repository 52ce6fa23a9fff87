"""Dispatch table: tool name -> async handler.

Every handler has the signature ``(args, media, context) -> Result[ToolOutput]``.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from relaybot.errors import RelaybotError, ToolExecutionError
from relaybot.logging_config import get_logger
from relaybot.schemas.engine import NormalizedRequest
from relaybot.services.result import Result

logger = get_logger("tool_registry")


@dataclass
class MediaRefs:
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    audio_url: Optional[str] = None

    @classmethod
    def from_request(cls, request: NormalizedRequest) -> "MediaRefs":
        return cls(image_url=request.imageUrl, video_url=request.videoUrl, audio_url=request.audioUrl)


@dataclass
class ToolContext:
    chat_id: str
    request: NormalizedRequest
    transport: Any = None
    history: Any = None
    quoted_message_id: Optional[str] = None


@dataclass
class ToolOutput:
    text: Optional[str] = None
    image_url: Optional[str] = None
    image_caption: Optional[str] = None
    video_url: Optional[str] = None
    video_caption: Optional[str] = None
    audio_url: Optional[str] = None
    poll: Optional[dict] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_info: Optional[str] = None
    already_sent: bool = False
    extra: dict = field(default_factory=dict)

    @property
    def has_media(self) -> bool:
        return bool(self.image_url or self.video_url or self.audio_url or self.poll or self.latitude is not None)


Handler = Callable[[dict, MediaRefs, ToolContext], Awaitable[Result[ToolOutput]]]


class ToolRegistry:
    def __init__(self):
        self._handlers: dict[str, Handler] = {}
        self._descriptions: dict[str, str] = {}

    def register(self, name: str, handler: Optional[Handler] = None, *, description: str = ""):
        """Register a handler directly or use as ``@registry.register("name")``."""

        def decorator(fn: Handler) -> Handler:
            self._handlers[name] = fn
            self._descriptions[name] = description or (fn.__doc__ or "").strip()
            return fn

        if handler is not None:
            return decorator(handler)
        return decorator

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)
        self._descriptions.pop(name, None)

    def get(self, name: str) -> Optional[Handler]:
        return self._handlers.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def describe(self) -> dict[str, str]:
        return dict(self._descriptions)

    async def dispatch(self, name: str, args: dict, media: MediaRefs, context: ToolContext) -> Result[ToolOutput]:
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning(f"No handler registered for tool {name}")
            return Result.from_error(
                ToolExecutionError(name, "unsupported tool", user_message=f"⚠️ הכלי {name} אינו זמין כרגע.")
            )

        try:
            result = await handler(args, media, context)
        except RelaybotError as e:
            logger.warning(f"Tool {name} failed: {e}", extra={"context": {"chat_id": context.chat_id}})
            return Result.from_error(e)
        except Exception as e:
            logger.error(f"Tool {name} raised: {e}", extra={"context": {"chat_id": context.chat_id}}, exc_info=True)
            return Result.from_error(ToolExecutionError(name, str(e)))

        if result is None:
            return Result.from_error(ToolExecutionError(name, "handler returned no result"))
        return result
