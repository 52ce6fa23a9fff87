from sqlalchemy import JSON, Boolean, Column, DateTime, Text
from sqlalchemy.sql import func

from relaybot.database import Base


class LastCommand(Base):
    __tablename__ = "last_commands"

    chat_id = Column(Text, primary_key=True)
    message_id = Column(Text)
    tool = Column(Text, nullable=False)
    tool_args = Column(JSON, nullable=False, default=dict)
    plan = Column(JSON)
    is_multi_step = Column(Boolean, nullable=False, default=False)
    prompt = Column(Text)
    normalized = Column(JSON)
    image_url = Column(Text)
    video_url = Column(Text)
    audio_url = Column(Text)
    saved_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
