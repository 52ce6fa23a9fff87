from relaybot.models.allow_list import AllowListEntry
from relaybot.models.chat_message import ChatMessage
from relaybot.models.last_command import LastCommand

__all__ = ["LastCommand", "ChatMessage", "AllowListEntry"]
