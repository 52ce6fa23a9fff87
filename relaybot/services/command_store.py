"""Per-chat record of the last concrete tool execution, used by retry."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from relaybot.database import SessionLocal
from relaybot.logging_config import get_logger
from relaybot.models import LastCommand
from relaybot.schemas.engine import CommandRecord, Decision, NormalizedRequest

logger = get_logger("command_store")

META_TOOLS = {"retry_last_command", "ask_clarification", "deny_unauthorized"}


def _record_from_row(row: LastCommand) -> CommandRecord:
    return CommandRecord(
        tool=row.tool,
        args=dict(row.tool_args or {}),
        imageUrl=row.image_url,
        videoUrl=row.video_url,
        audioUrl=row.audio_url,
        normalizedSnapshot=row.normalized,
        isMultiStep=bool(row.is_multi_step),
        plan=row.plan,
        savedAt=row.saved_at,
    )


class LastCommandStore:
    """Write-through cache in front of the ``last_commands`` table.

    Last writer wins per chat.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory
        self._cache: dict[str, CommandRecord] = {}

    def save(
        self,
        chat_id: str,
        decision: Decision,
        context: Optional[NormalizedRequest] = None,
        *,
        plan: Optional[list[dict]] = None,
    ) -> bool:
        """Store the decision. Meta decisions never overwrite the record."""
        if decision.tool in META_TOOLS:
            return False

        record = CommandRecord(
            tool=decision.tool,
            args=dict(decision.args),
            imageUrl=context.imageUrl if context else None,
            videoUrl=context.videoUrl if context else None,
            audioUrl=context.audioUrl if context else None,
            normalizedSnapshot=context.model_dump(mode="json") if context else None,
            isMultiStep=plan is not None,
            plan=plan,
            savedAt=datetime.now(timezone.utc),
        )
        self._cache[chat_id] = record
        self._persist(chat_id, record, context)
        return True

    def load(self, chat_id: str) -> Optional[CommandRecord]:
        cached = self._cache.get(chat_id)
        if cached is not None:
            return cached

        db = self.session_factory()
        try:
            row = db.query(LastCommand).filter(LastCommand.chat_id == chat_id).first()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to load last command: {e}", extra={"context": {"chat_id": chat_id}})
            return None
        finally:
            db.close()

        if row is None:
            return None
        record = _record_from_row(row)
        self._cache[chat_id] = record
        return record

    def evict(self, chat_id: str) -> None:
        self._cache.pop(chat_id, None)

    def clear_all(self) -> int:
        self._cache.clear()
        db = self.session_factory()
        try:
            deleted = db.query(LastCommand).delete()
            db.commit()
            return deleted
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def _persist(self, chat_id: str, record: CommandRecord, context: Optional[NormalizedRequest]) -> None:
        db = self.session_factory()
        try:
            db.merge(
                LastCommand(
                    chat_id=chat_id,
                    message_id=context.messageId if context else None,
                    tool=record.tool,
                    tool_args=record.args,
                    plan=record.plan,
                    is_multi_step=record.isMultiStep,
                    prompt=record.args.get("prompt") or record.args.get("text"),
                    normalized=record.normalizedSnapshot,
                    image_url=record.imageUrl,
                    video_url=record.videoUrl,
                    audio_url=record.audioUrl,
                    saved_at=record.savedAt,
                )
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(
                f"Last command kept in memory only: {e}",
                extra={"context": {"chat_id": chat_id, "tool": record.tool}},
                exc_info=True,
            )
        finally:
            db.close()
