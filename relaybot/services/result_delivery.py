import re
from typing import Optional

from relaybot.errors import TransportError
from relaybot.logging_config import get_logger
from relaybot.services.execution_loop import ExecutionResult

logger = get_logger("result_delivery")

UNKNOWN_ERROR_MESSAGE = "לא הצלחתי לעבד את הבקשה"

GENERIC_SUCCESS_RE = re.compile(r"^\s*(✅\s*)?(done|בוצע|הנה|here you go|הנה התמונה|הנה הסרטון)[\s.!]*$", re.I)


def is_generic_success(text: Optional[str]) -> bool:
    return bool(text) and bool(GENERIC_SUCCESS_RE.match(text))


class ResultDeliverer:
    """Sends an ExecutionResult to the chat, once."""

    def __init__(self, transport, history=None):
        self.transport = transport
        self.history = history

    async def deliver(self, result: ExecutionResult, chat_id: str, quoted_message_id: Optional[str] = None) -> bool:
        """Send every output of ``result`` in order. Returns True if anything reached the chat.

        A failed send is logged and the remaining outputs are still tried. Only when nothing
        got through does the chat get a single error message.
        """
        if result.already_sent:
            logger.debug("Result already sent inline, skipping delivery", extra={"context": {"chat_id": chat_id}})
            self._remember(chat_id, result)
            return False

        sends = self._plan_sends(result, chat_id, quoted_message_id)
        delivered = 0
        for label, send in sends:
            try:
                await send()
                delivered += 1
            except TransportError as e:
                logger.error(f"Failed to send {label}: {e}", extra={"context": {"chat_id": chat_id}})

        if not delivered:
            if sends:
                logger.warning("No output reached the chat", extra={"context": {"chat_id": chat_id}})
            await self.send_notice(chat_id, UNKNOWN_ERROR_MESSAGE, quoted_message_id)
            return False

        self._remember(chat_id, result)
        return True

    def _plan_sends(self, result: ExecutionResult, chat_id: str, quoted_message_id: Optional[str]):
        transport = self.transport
        sends = []
        text_sent = False

        if result.multi_step and result.text:
            sends.append(("text", lambda: transport.send_text(chat_id, result.text, quoted_message_id)))
            text_sent = True

        if result.image_url:
            caption = result.image_caption or ""
            if not caption and result.text and not text_sent and not is_generic_success(result.text):
                caption = result.text
                text_sent = True
            sends.append(
                ("image", lambda: transport.send_file(chat_id, result.image_url, "image.png", caption, quoted_message_id))
            )

        if result.video_url:
            sends.append(
                (
                    "video",
                    lambda: transport.send_file(
                        chat_id, result.video_url, "video.mp4", result.video_caption or "", quoted_message_id
                    ),
                )
            )

        if result.audio_url:
            sends.append(("audio", lambda: transport.send_file(chat_id, result.audio_url, "audio.mp3", "", quoted_message_id)))

        if result.poll:
            sends.append(
                ("poll", lambda: transport.send_poll(chat_id, result.poll["question"], result.poll["options"], False))
            )

        if result.latitude is not None and result.longitude is not None:
            sends.append(("location", lambda: transport.send_location(chat_id, result.latitude, result.longitude)))
            if result.location_info:
                sends.append(
                    ("location info", lambda: transport.send_text(chat_id, f"📍 {result.location_info}", quoted_message_id))
                )

        if result.text and not text_sent and not (result.image_url and is_generic_success(result.text)):
            sends.append(("text", lambda: transport.send_text(chat_id, result.text, quoted_message_id)))

        return sends

    async def send_notice(self, chat_id: str, message: str, quoted_message_id: Optional[str] = None) -> bool:
        try:
            await self.transport.send_text(chat_id, message, quoted_message_id)
            return True
        except TransportError as e:
            logger.error(f"Failed to send notice: {e}", extra={"context": {"chat_id": chat_id}})
            return False

    def _remember(self, chat_id: str, result: ExecutionResult) -> None:
        if self.history is None:
            return
        content = result.text or result.image_caption or result.video_caption
        if content:
            self.history.add(chat_id, "assistant", content)
