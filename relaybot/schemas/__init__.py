from relaybot.schemas.engine import (
    Authorizations,
    CommandRecord,
    Decision,
    NormalizedRequest,
    QuotedContext,
    QuotedResolution,
)
from relaybot.schemas.webhook import FlatTestMessage, GreenApiWebhook, WebhookAck

__all__ = [
    "Authorizations",
    "CommandRecord",
    "Decision",
    "NormalizedRequest",
    "QuotedContext",
    "QuotedResolution",
    "GreenApiWebhook",
    "FlatTestMessage",
    "WebhookAck",
]
