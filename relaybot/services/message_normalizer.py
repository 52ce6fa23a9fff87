"""Turn a Green API notification into a NormalizedRequest.

Green API encodes a genuine reply and a fresh media message with a caption in the same
``quotedMessage`` wire shape, so most of the work here is telling the two apart.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

from relaybot.logging_config import get_logger
from relaybot.schemas.engine import TRIGGER_RE, Authorizations, NormalizedRequest, QuotedContext, strip_trigger
from relaybot.schemas.webhook import GreenApiWebhook, SenderData

logger = get_logger("message_normalizer")

MEDIA_KIND = {
    "imageMessage": "image",
    "stickerMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
}

# Ordered accessor lists; the first non-empty value wins.
INLINE_URL_PATHS = {
    "image": (
        ("downloadUrl",),
        ("fileMessageData", "downloadUrl"),
        ("imageMessageData", "downloadUrl"),
        ("stickerMessageData", "downloadUrl"),
    ),
    "video": (
        ("downloadUrl",),
        ("fileMessageData", "downloadUrl"),
        ("videoMessageData", "downloadUrl"),
    ),
    "audio": (
        ("downloadUrl",),
        ("fileMessageData", "downloadUrl"),
        ("audioMessageData", "downloadUrl"),
    ),
}

CAPTION_PATHS = {
    "image": (("caption",), ("fileMessageData", "caption"), ("imageMessageData", "caption")),
    "video": (("caption",), ("fileMessageData", "caption"), ("videoMessageData", "caption")),
    "audio": (("caption",),),
}

QUOTED_TEXT_PATHS = (
    ("textMessage",),
    ("textMessageData", "textMessage"),
    ("extendedTextMessageData", "text"),
    ("caption",),
)


def get_path(data: Any, path: tuple[str, ...]) -> Any:
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def first_present(data: Any, paths: tuple[tuple[str, ...], ...]) -> Optional[str]:
    for path in paths:
        value = get_path(data, path)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _quoted_text(message_data: dict) -> Optional[str]:
    # A reply keeps its text in extendedTextMessageData; a captioned media message that
    # arrived in reply shape keeps it in the media caption instead.
    return get_path(message_data, ("extendedTextMessageData", "text")) or first_present(
        message_data,
        (
            ("fileMessageData", "caption"),
            ("imageMessageData", "caption"),
            ("videoMessageData", "caption"),
            ("stickerMessageData", "caption"),
        ),
    )


TEXT_EXTRACTORS: dict[str, Callable[[dict], Optional[str]]] = {
    "textMessage": lambda md: get_path(md, ("textMessageData", "textMessage")),
    "extendedTextMessage": lambda md: get_path(md, ("extendedTextMessageData", "text")),
    "quotedMessage": _quoted_text,
    "editedMessage": lambda md: get_path(md, ("editedMessageData", "textMessage")),
    "imageMessage": lambda md: first_present(md, (("fileMessageData", "caption"), ("imageMessageData", "caption"))),
    "videoMessage": lambda md: first_present(md, (("fileMessageData", "caption"), ("videoMessageData", "caption"))),
    "stickerMessage": lambda md: first_present(md, (("fileMessageData", "caption"), ("stickerMessageData", "caption"))),
}


def extract_text(message_data: dict) -> Optional[str]:
    """Pick the single text field that belongs to the message type."""
    extractor = TEXT_EXTRACTORS.get(message_data.get("typeMessage"))
    if extractor is None:
        return None
    text = extractor(message_data)
    return text if isinstance(text, str) else None


def is_command(text: Optional[str]) -> bool:
    return bool(text) and bool(TRIGGER_RE.match(text.strip()))


def is_actual_quote(message_data: dict) -> bool:
    """True only for a genuine reply.

    When the reply text and the quoted item's own caption are prefixes of one another the
    "quote" is leftover caption metadata of a new media message.
    """
    if message_data.get("typeMessage") != "quotedMessage":
        return False
    quoted = message_data.get("quotedMessage")
    if not isinstance(quoted, dict) or not quoted.get("stanzaId"):
        return False

    reply_text = get_path(message_data, ("extendedTextMessageData", "text"))
    if not reply_text:
        return False

    caption = quoted.get("caption")
    if caption and (caption == reply_text or caption.startswith(reply_text) or reply_text.startswith(caption)):
        return False
    return True


def chat_type(chat_id: str) -> str:
    if chat_id.endswith("@g.us"):
        return "group"
    if chat_id.endswith("@c.us"):
        return "private"
    return "unknown"


def resolve_current_contact(sender: SenderData) -> str:
    """Contact name used for allow-list lookups of this chat."""
    kind = chat_type(sender.chatId)
    if kind == "group":
        return sender.chatName or sender.senderName or ""
    if kind == "private":
        for candidate in (sender.senderContactName, sender.chatName, sender.senderName):
            if candidate and candidate.strip():
                return candidate
        return ""
    return sender.senderContactName or sender.chatName or sender.senderName or ""


def build_quoted_context(quoted: dict) -> QuotedContext:
    kind = MEDIA_KIND.get(quoted.get("typeMessage"))
    return QuotedContext(
        type=quoted.get("typeMessage") or "unknown",
        text=first_present(quoted, QUOTED_TEXT_PATHS) or "",
        stanzaId=quoted["stanzaId"],
        hasImage=kind == "image",
        hasVideo=kind == "video",
        hasAudio=kind == "audio",
        raw=quoted,
    )


@dataclass
class ManagementCommand:
    action: str
    contact_name: Optional[str] = None
    is_current_contact: bool = False


CONTACT_COMMANDS = (
    ("הוסף ליצירה", "add_media_authorization"),
    ("הסר מיצירה", "remove_media_authorization"),
    ("הוסף לתמלול", "include_in_transcription"),
    ("הסר מתמלול", "exclude_from_transcription"),
    ("הוסף לקבוצות", "add_group_authorization"),
    ("הסר מקבוצות", "remove_group_authorization"),
)

EXACT_COMMANDS = {
    "סטטוס יצירה": "media_creation_status",
    "סטטוס תמלול": "voice_transcription_status",
    "סטטוס קבוצות": "group_creation_status",
    "עדכן אנשי קשר": "sync_contacts",
    "נקה היסטוריה": "clear_all_conversations",
    "הצג היסטוריה": "show_history",
}


def parse_management_command(text: Optional[str], sender: SenderData) -> Optional[ManagementCommand]:
    if not text or not text.strip() or is_command(text):
        return None
    trimmed = text.strip()

    if trimmed in EXACT_COMMANDS:
        return ManagementCommand(action=EXACT_COMMANDS[trimmed])

    for phrase, action in CONTACT_COMMANDS:
        if trimmed == phrase:
            return ManagementCommand(
                action=action,
                contact_name=resolve_current_contact(sender),
                is_current_contact=True,
            )
        if trimmed.startswith(phrase + " "):
            contact_name = trimmed[len(phrase) + 1 :].strip()
            if contact_name:
                return ManagementCommand(action=action, contact_name=contact_name)
    return None


@dataclass
class InboundClassification:
    kind: str  # command, management, ignored
    text: Optional[str] = None
    management: Optional[ManagementCommand] = None


def classify(event: GreenApiWebhook) -> InboundClassification:
    """Gate: only trigger-marked text (or a bare voice note) reaches the tool pipeline."""
    text = extract_text(event.messageData)
    if is_command(text):
        return InboundClassification(kind="command", text=text)

    if event.type_message == "audioMessage" and not event.is_outgoing:
        return InboundClassification(kind="command", text=None)

    if event.is_outgoing:
        management = parse_management_command(text, event.senderData)
        if management:
            return InboundClassification(kind="management", text=text, management=management)

    return InboundClassification(kind="ignored", text=text)


def normalize(event: GreenApiWebhook, authorizations: Optional[Authorizations] = None) -> NormalizedRequest:
    message_data = event.messageData
    type_message = message_data.get("typeMessage")
    prompt = strip_trigger(extract_text(message_data))

    request = NormalizedRequest(
        text=f"# {prompt}" if prompt else "",
        chatType=chat_type(event.chat_id),
        language="he",
        authorizations=authorizations or Authorizations(),
        chatId=event.chat_id,
        messageId=event.idMessage,
        isOutgoing=event.is_outgoing,
    )

    quoted = message_data.get("quotedMessage")
    if is_actual_quote(message_data):
        # Media of a genuine reply is resolved later, through the tiered resolver.
        request.quotedContext = build_quoted_context(quoted)
        source, kind = None, None
    elif type_message == "quotedMessage" and isinstance(quoted, dict):
        source, kind = quoted, MEDIA_KIND.get(quoted.get("typeMessage"))
    else:
        source, kind = message_data, MEDIA_KIND.get(type_message)

    if kind:
        url = first_present(source, INLINE_URL_PATHS[kind])
        setattr(request, f"has{kind.capitalize()}", True)
        setattr(request, f"{kind}Url", url)

    logger.debug(
        "Normalized inbound message",
        extra={
            "context": {
                "message_id": event.idMessage,
                "type": type_message,
                "quoted": request.quotedContext is not None,
                "media": kind,
            }
        },
    )
    return request
