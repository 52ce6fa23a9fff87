from sqlalchemy import Column, DateTime, Integer, Text, UniqueConstraint
from sqlalchemy.sql import func

from relaybot.database import Base


class AllowListEntry(Base):
    __tablename__ = "allow_list_entries"
    __table_args__ = (UniqueConstraint("list_name", "contact_name", name="uq_allow_list_contact"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    list_name = Column(Text, nullable=False)  # media_creation, voice_transcription, group_creation
    contact_name = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
