"""In-process guard against repeated webhook deliveries."""

import time
from dataclasses import dataclass
from typing import Optional

from relaybot.config import settings
from relaybot.logging_config import get_logger
from relaybot.schemas.webhook import GreenApiWebhook

logger = get_logger("dedup_service")

EDITED_MESSAGE = "editedMessage"


@dataclass
class DedupDecision:
    accept: bool
    id: str


def build_message_id(event: GreenApiWebhook, now_ms: Optional[int] = None) -> str:
    """Edited messages get a fresh composite id so the edit is processed again."""
    if event.type_message == EDITED_MESSAGE:
        stamp = now_ms if now_ms is not None else int(time.time() * 1000)
        return f"{event.idMessage}_edited_{stamp}"
    return event.idMessage


class DedupGuard:
    """Bounded set of seen message ids.

    There is no per-entry expiry: once the set grows past ``max_size`` the periodic sweep
    drops everything at once.
    """

    def __init__(self, max_size: Optional[int] = None):
        self.max_size = max_size if max_size is not None else settings.dedup_max_size
        self._seen: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._seen

    def accept(self, event: GreenApiWebhook) -> DedupDecision:
        message_id = build_message_id(event)
        if message_id in self._seen:
            logger.debug(
                "Duplicate webhook delivery skipped",
                extra={"context": {"message_id": message_id}},
            )
            return DedupDecision(accept=False, id=message_id)
        self._seen[message_id] = time.time()
        return DedupDecision(accept=True, id=message_id)

    def clear_if_oversized(self) -> bool:
        if len(self._seen) <= self.max_size:
            return False
        size = len(self._seen)
        self._seen.clear()
        logger.info("Dedup cache cleared", extra={"context": {"size": size, "max_size": self.max_size}})
        return True


dedup_guard = DedupGuard()
