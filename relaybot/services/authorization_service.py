from typing import Optional

from sqlalchemy.exc import IntegrityError

from relaybot.database import SessionLocal
from relaybot.logging_config import get_logger
from relaybot.models import AllowListEntry
from relaybot.schemas.engine import Authorizations
from relaybot.schemas.webhook import GreenApiWebhook
from relaybot.services.message_normalizer import resolve_current_contact

logger = get_logger("authorization_service")

MEDIA_CREATION = "media_creation"
VOICE_TRANSCRIPTION = "voice_transcription"
GROUP_CREATION = "group_creation"


class AllowLists:
    """Persistent allow-lists keyed by contact name."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def add(self, list_name: str, contact_name: str) -> bool:
        """Returns False if the contact was already on the list."""
        db = self.session_factory()
        try:
            db.add(AllowListEntry(list_name=list_name, contact_name=contact_name))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False
        finally:
            db.close()

    def remove(self, list_name: str, contact_name: str) -> bool:
        db = self.session_factory()
        try:
            deleted = (
                db.query(AllowListEntry)
                .filter(AllowListEntry.list_name == list_name, AllowListEntry.contact_name == contact_name)
                .delete()
            )
            db.commit()
            return deleted > 0
        finally:
            db.close()

    def contains(self, list_name: str, contact_name: Optional[str]) -> bool:
        if not contact_name:
            return False
        db = self.session_factory()
        try:
            return (
                db.query(AllowListEntry)
                .filter(AllowListEntry.list_name == list_name, AllowListEntry.contact_name == contact_name)
                .first()
                is not None
            )
        finally:
            db.close()

    def members(self, list_name: str) -> list[str]:
        db = self.session_factory()
        try:
            rows = (
                db.query(AllowListEntry)
                .filter(AllowListEntry.list_name == list_name)
                .order_by(AllowListEntry.contact_name)
                .all()
            )
            return [row.contact_name for row in rows]
        finally:
            db.close()

    def authorizations_for(self, event: GreenApiWebhook) -> Authorizations:
        if event.is_outgoing:
            return Authorizations(media_creation=True, voice_allowed=True, group_creation=True)

        contact = resolve_current_contact(event.senderData)
        return Authorizations(
            media_creation=self.contains(MEDIA_CREATION, contact),
            voice_allowed=self.contains(VOICE_TRANSCRIPTION, contact),
            group_creation=self.contains(GROUP_CREATION, contact),
        )
