from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

INCOMING_MESSAGE = "incomingMessageReceived"
OUTGOING_MESSAGE = "outgoingMessageReceived"
HANDLED_WEBHOOK_TYPES = {INCOMING_MESSAGE, OUTGOING_MESSAGE}


class SenderData(BaseModel):
    model_config = ConfigDict(extra="allow")

    chatId: str
    sender: Optional[str] = None
    chatName: Optional[str] = None
    senderName: Optional[str] = None
    senderContactName: Optional[str] = None


class InstanceData(BaseModel):
    model_config = ConfigDict(extra="allow")

    idInstance: Optional[int] = None
    wid: Optional[str] = None


class GreenApiWebhook(BaseModel):
    """Green API notification. ``messageData`` keeps its raw nested shape."""

    model_config = ConfigDict(extra="allow")

    typeWebhook: str
    idMessage: str
    timestamp: Optional[int] = None
    instanceData: Optional[InstanceData] = None
    senderData: SenderData
    messageData: dict[str, Any] = Field(default_factory=dict)
    token: Optional[str] = Field(default=None, exclude=True)

    @property
    def type_message(self) -> Optional[str]:
        return self.messageData.get("typeMessage")

    @property
    def chat_id(self) -> str:
        return self.senderData.chatId

    @property
    def is_outgoing(self) -> bool:
        return self.typeWebhook == OUTGOING_MESSAGE


class FlatTestMessage(BaseModel):
    """Minimal ``{idMessage, typeMessage, text}`` form accepted for manual probes."""

    idMessage: str
    typeMessage: str = "textMessage"
    text: str = ""
    chatId: str = Field(
        default="test@c.us",
        validation_alias=AliasChoices("chatId", "chat_id"),
    )

    def to_webhook(self) -> GreenApiWebhook:
        return GreenApiWebhook(
            typeWebhook=INCOMING_MESSAGE,
            idMessage=self.idMessage,
            senderData=SenderData(chatId=self.chatId, sender=self.chatId),
            messageData={
                "typeMessage": self.typeMessage,
                "textMessageData": {"textMessage": self.text},
            },
        )


class WebhookAck(BaseModel):
    status: str = "ok"
