"""Resolve a usable media URL for replies to earlier messages.

Tiers, first success wins:
    1. URL fields already present on the quoted reference
    2. re-fetch of the original message through ``getMessage``
    3. images only: the embedded jpeg thumbnail, stored as a temp file

If every tier misses the caller gets a localized error, never a null URL.
"""

from typing import Optional

from relaybot.errors import MediaResolutionError, TransportError
from relaybot.logging_config import get_logger
from relaybot.schemas.engine import TRIGGER_RE, NormalizedRequest, QuotedContext, QuotedResolution
from relaybot.services.media_storage import materialize_thumbnail
from relaybot.services.message_normalizer import INLINE_URL_PATHS, CAPTION_PATHS, MEDIA_KIND, first_present

logger = get_logger("quoted_media_service")

TEXT_TYPES = {"textMessage", "extendedTextMessage"}

MEDIA_NOUNS = {"image": "תמונה", "video": "וידאו"}

# getMessage responses may nest the media block under messageData.
REFETCH_URL_PATHS = {
    kind: paths + tuple(("messageData",) + path for path in paths if len(path) > 1)
    for kind, paths in INLINE_URL_PATHS.items()
}
REFETCH_URL_PATHS["audio"] = REFETCH_URL_PATHS["audio"] + (
    ("documentMessageData", "downloadUrl"),
    ("messageData", "documentMessageData", "downloadUrl"),
)


def media_unavailable_error(kind: str) -> MediaResolutionError:
    noun = MEDIA_NOUNS.get(kind, "מדיה")
    return MediaResolutionError(
        f"no media url for quoted {kind}",
        user_message=f"⚠️ לא הצלחתי לגשת ל{noun} המצוטטת. ייתכן שהיא נמחקה או ממספר אחר.",
    )


def merge_caption(caption: Optional[str], new_text: str) -> str:
    """Quoted media captioned with a command: ``"<command>, <new text>"``."""
    if not caption or not TRIGGER_RE.match(caption.strip()):
        return new_text
    clean_caption = TRIGGER_RE.sub("", caption.strip())
    if new_text and new_text.strip():
        return f"{clean_caption}, {new_text}"
    return clean_caption


class QuotedMediaResolver:
    def __init__(self, transport, thumbnail_store=materialize_thumbnail):
        self.transport = transport
        self.thumbnail_store = thumbnail_store

    async def resolve(self, quoted: QuotedContext, new_text: str, chat_id: str) -> QuotedResolution:
        if quoted.type in TEXT_TYPES:
            return QuotedResolution(prompt=f"{quoted.text}\n\n{new_text}")

        kind = MEDIA_KIND.get(quoted.type)
        if kind is None:
            logger.debug(f"Unsupported quoted type {quoted.type}, using current prompt only")
            return QuotedResolution(prompt=new_text)

        url = await self.resolve_url(kind, quoted.raw, chat_id, quoted.stanzaId, allow_thumbnail=True)
        if not url:
            error = media_unavailable_error(kind)
            logger.warning(
                "Quoted media inaccessible",
                extra={"context": {"chat_id": chat_id, "stanza_id": quoted.stanzaId, "type": quoted.type}},
            )
            return QuotedResolution(prompt=new_text, error=error.user_message)

        caption = first_present(quoted.raw, CAPTION_PATHS[kind])
        return QuotedResolution(
            hasImage=kind == "image",
            hasVideo=kind == "video",
            hasAudio=kind == "audio",
            prompt=merge_caption(caption, new_text),
            mediaUrl=url,
        )

    async def resolve_url(
        self,
        kind: str,
        inline: dict,
        chat_id: str,
        message_id: Optional[str],
        *,
        allow_thumbnail: bool = False,
    ) -> Optional[str]:
        tiers = [
            ("inline", lambda: self._from_inline(kind, inline)),
            ("refetch", lambda: self._from_refetch(kind, chat_id, message_id)),
        ]
        if allow_thumbnail and kind == "image":
            tiers.append(("thumbnail", lambda: self._from_thumbnail(inline)))

        for tier_name, tier in tiers:
            url = await tier()
            if url:
                logger.debug(f"Media url resolved via {tier_name}", extra={"context": {"message_id": message_id}})
                return url
        return None

    async def _from_inline(self, kind: str, inline: dict) -> Optional[str]:
        return first_present(inline, INLINE_URL_PATHS[kind])

    async def _from_refetch(self, kind: str, chat_id: str, message_id: Optional[str]) -> Optional[str]:
        if not message_id:
            return None
        try:
            original = await self.transport.get_message(chat_id, message_id)
        except TransportError as e:
            logger.warning(f"getMessage failed for {message_id}: {e}")
            return None
        if not original:
            return None
        return first_present(original, REFETCH_URL_PATHS[kind])

    async def _from_thumbnail(self, inline: dict) -> Optional[str]:
        thumbnail = inline.get("jpegThumbnail")
        if not thumbnail:
            return None
        try:
            return self.thumbnail_store(thumbnail)
        except OSError as e:
            logger.error(f"Failed to store thumbnail: {e}", exc_info=True)
            return None

    async def ensure_request_media(self, request: NormalizedRequest, inline: Optional[dict] = None) -> Optional[str]:
        """Fill a missing URL on a direct or captioned media message.

        Returns a user-facing error when the URL cannot be found.
        """
        for kind in ("image", "video", "audio"):
            if not getattr(request, f"has{kind.capitalize()}") or getattr(request, f"{kind}Url"):
                continue
            url = await self.resolve_url(kind, inline or {}, request.chatId, request.messageId)
            if not url:
                return media_unavailable_error(kind).user_message
            setattr(request, f"{kind}Url", url)
        return None
