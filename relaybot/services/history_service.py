from typing import Optional

from relaybot.config import settings
from relaybot.database import SessionLocal
from relaybot.logging_config import get_logger
from relaybot.models import ChatMessage

logger = get_logger("history_service")


class ConversationHistory:
    """Bounded recent-message history per chat."""

    def __init__(self, session_factory=SessionLocal, limit: Optional[int] = None):
        self.session_factory = session_factory
        self.limit = limit if limit is not None else settings.history_limit

    def add(self, chat_id: str, role: str, content: Optional[str]) -> None:
        if not content or not content.strip():
            return
        db = self.session_factory()
        try:
            db.add(ChatMessage(chat_id=chat_id, role=role, content=content))
            db.flush()
            stale_ids = [
                row.id
                for row in db.query(ChatMessage.id)
                .filter(ChatMessage.chat_id == chat_id)
                .order_by(ChatMessage.id.desc())
                .offset(self.limit)
                .all()
            ]
            if stale_ids:
                db.query(ChatMessage).filter(ChatMessage.id.in_(stale_ids)).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def recent(self, chat_id: str, limit: Optional[int] = None) -> list[dict]:
        db = self.session_factory()
        try:
            rows = (
                db.query(ChatMessage)
                .filter(ChatMessage.chat_id == chat_id)
                .order_by(ChatMessage.id.desc())
                .limit(limit or self.limit)
                .all()
            )
            return [{"role": row.role, "content": row.content} for row in reversed(rows)]
        finally:
            db.close()

    def clear_all(self) -> int:
        db = self.session_factory()
        try:
            deleted = db.query(ChatMessage).delete()
            db.commit()
            logger.info(f"Conversation history cleared: {deleted} messages")
            return deleted
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
