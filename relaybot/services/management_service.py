"""Owner management commands sent from the bot's own number."""

from relaybot.logging_config import get_logger
from relaybot.services.authorization_service import GROUP_CREATION, MEDIA_CREATION, VOICE_TRANSCRIPTION
from relaybot.services.message_normalizer import ManagementCommand

logger = get_logger("management_service")

LIST_ACTIONS = {
    "add_media_authorization": ("add", MEDIA_CREATION, "יצירת מדיה"),
    "remove_media_authorization": ("remove", MEDIA_CREATION, "יצירת מדיה"),
    "include_in_transcription": ("add", VOICE_TRANSCRIPTION, "תמלול"),
    "exclude_from_transcription": ("remove", VOICE_TRANSCRIPTION, "תמלול"),
    "add_group_authorization": ("add", GROUP_CREATION, "יצירת קבוצות"),
    "remove_group_authorization": ("remove", GROUP_CREATION, "יצירת קבוצות"),
}

STATUS_ACTIONS = {
    "media_creation_status": (MEDIA_CREATION, "יצירת מדיה"),
    "voice_transcription_status": (VOICE_TRANSCRIPTION, "תמלול"),
    "group_creation_status": (GROUP_CREATION, "יצירת קבוצות"),
}


class ManagementService:
    def __init__(self, transport, allow_lists, history, command_store):
        self.transport = transport
        self.allow_lists = allow_lists
        self.history = history
        self.command_store = command_store

    async def execute(self, command: ManagementCommand, chat_id: str) -> str:
        reply = await self._reply_for(command, chat_id)
        logger.info(f"Management command {command.action}", extra={"context": {"chat_id": chat_id}})
        await self.transport.send_text(chat_id, reply)
        return reply

    async def _reply_for(self, command: ManagementCommand, chat_id: str) -> str:
        if command.action in LIST_ACTIONS:
            operation, list_name, label = LIST_ACTIONS[command.action]
            contact = command.contact_name
            if not contact:
                return "⚠️ לא זוהה איש קשר."
            if operation == "add":
                changed = self.allow_lists.add(list_name, contact)
                return f"✅ {contact} נוסף לרשימת {label}" if changed else f"ℹ️ {contact} כבר ברשימת {label}"
            changed = self.allow_lists.remove(list_name, contact)
            return f"✅ {contact} הוסר מרשימת {label}" if changed else f"ℹ️ {contact} לא נמצא ברשימת {label}"

        if command.action in STATUS_ACTIONS:
            list_name, label = STATUS_ACTIONS[command.action]
            members = self.allow_lists.members(list_name)
            if not members:
                return f"ℹ️ רשימת {label} ריקה"
            return f"📋 רשימת {label}:\n" + "\n".join(f"• {name}" for name in members)

        if command.action == "clear_all_conversations":
            deleted = self.history.clear_all()
            self.command_store.clear_all()
            return f"🗑️ ההיסטוריה נוקתה ({deleted} הודעות)"

        if command.action == "show_history":
            messages = self.history.recent(chat_id)
            if not messages:
                return "ℹ️ אין היסטוריה בשיחה זו"
            return "📜 היסטוריה:\n" + "\n".join(f"{m['role']}: {m['content'][:200]}" for m in messages)

        if command.action == "sync_contacts":
            contacts = await self.transport.get_contacts()
            return f"✅ עודכנו {len(contacts)} אנשי קשר"

        logger.warning(f"Unknown management action {command.action}")
        return "⚠️ פקודה לא מוכרת"
