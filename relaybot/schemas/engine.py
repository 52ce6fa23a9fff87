import re
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

TRIGGER_RE = re.compile(r"^#\s+")


def strip_trigger(text: Optional[str]) -> str:
    """Drop the leading ``# `` command marker."""
    if not text:
        return ""
    return TRIGGER_RE.sub("", text.strip()).strip()


class Authorizations(BaseModel):
    media_creation: bool = False
    voice_allowed: bool = False
    group_creation: bool = False


class QuotedContext(BaseModel):
    type: str
    text: str = ""
    stanzaId: str
    hasImage: bool = False
    hasVideo: bool = False
    hasAudio: bool = False
    mediaUrl: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)


class NormalizedRequest(BaseModel):
    text: str = ""
    hasImage: bool = False
    hasVideo: bool = False
    hasAudio: bool = False
    imageUrl: Optional[str] = None
    videoUrl: Optional[str] = None
    audioUrl: Optional[str] = None
    chatType: str = "unknown"
    language: str = "he"
    authorizations: Authorizations = Field(default_factory=Authorizations)
    quotedContext: Optional[QuotedContext] = None
    chatId: str = ""
    messageId: Optional[str] = None
    isOutgoing: bool = False

    @property
    def prompt(self) -> str:
        return strip_trigger(self.text)


class Decision(BaseModel):
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""


class CommandRecord(BaseModel):
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)
    imageUrl: Optional[str] = None
    videoUrl: Optional[str] = None
    audioUrl: Optional[str] = None
    normalizedSnapshot: Optional[dict[str, Any]] = None
    isMultiStep: bool = False
    plan: Optional[list[dict[str, Any]]] = None
    savedAt: Optional[datetime] = None

    def to_decision(self) -> Decision:
        return Decision(tool=self.tool, args=dict(self.args), reason="Stored command")


class QuotedResolution(BaseModel):
    hasImage: bool = False
    hasVideo: bool = False
    hasAudio: bool = False
    prompt: str = ""
    mediaUrl: Optional[str] = None
    error: Optional[str] = None

    @property
    def imageUrl(self) -> Optional[str]:
        return self.mediaUrl if self.hasImage else None

    @property
    def videoUrl(self) -> Optional[str]:
        return self.mediaUrl if self.hasVideo else None

    @property
    def audioUrl(self) -> Optional[str]:
        return self.mediaUrl if self.hasAudio else None
