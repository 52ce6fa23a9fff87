from relaybot.models import LastCommand
from relaybot.schemas.engine import Decision, NormalizedRequest
from relaybot.services.command_store import LastCommandStore


def _request(**kwargs) -> NormalizedRequest:
    return NormalizedRequest(text="# a cat", chatId="chat@c.us", messageId="M1", **kwargs)


class TestSave:
    def test_meta_tools_are_not_stored(self, session_factory):
        store = LastCommandStore(session_factory)
        for tool in ("retry_last_command", "ask_clarification", "deny_unauthorized"):
            assert store.save("chat@c.us", Decision(tool=tool), _request()) is False
        assert store.load("chat@c.us") is None

    def test_meta_tool_keeps_previous_record(self, session_factory):
        store = LastCommandStore(session_factory)
        store.save("chat@c.us", Decision(tool="gemini_image", args={"prompt": "a cat"}), _request())
        store.save("chat@c.us", Decision(tool="retry_last_command"), _request())
        assert store.load("chat@c.us").tool == "gemini_image"

    def test_last_writer_wins(self, session_factory):
        store = LastCommandStore(session_factory)
        store.save("chat@c.us", Decision(tool="gemini_image", args={"prompt": "a cat"}), _request())
        store.save("chat@c.us", Decision(tool="openai_chat", args={"prompt": "hi"}), _request())
        assert store.load("chat@c.us").tool == "openai_chat"

    def test_media_urls_are_recorded(self, session_factory):
        store = LastCommandStore(session_factory)
        request = _request(hasImage=True, imageUrl="https://files.example/cat.jpg")
        store.save("chat@c.us", Decision(tool="image_edit", args={"prompt": "blue"}), request)
        record = store.load("chat@c.us")
        assert record.imageUrl == "https://files.example/cat.jpg"
        assert record.normalizedSnapshot["text"] == "# a cat"
        assert record.isMultiStep is False

    def test_plan_marks_multi_step(self, session_factory):
        store = LastCommandStore(session_factory)
        plan = [{"tool": "openai_chat", "args": {"prompt": "x"}}, {"tool": "gemini_image", "args": {"prompt": "y"}}]
        store.save("chat@c.us", Decision(tool="multi_step", args={"plan": plan}), _request(), plan=plan)
        record = store.load("chat@c.us")
        assert record.isMultiStep is True
        assert record.plan == plan


class TestPersistence:
    def test_record_survives_new_store_instance(self, session_factory):
        LastCommandStore(session_factory).save(
            "chat@c.us", Decision(tool="veo3_video", args={"prompt": "waves"}), _request()
        )
        record = LastCommandStore(session_factory).load("chat@c.us")
        assert record is not None
        assert record.tool == "veo3_video"
        assert record.args == {"prompt": "waves"}

    def test_row_is_written(self, session_factory):
        LastCommandStore(session_factory).save(
            "chat@c.us", Decision(tool="veo3_video", args={"prompt": "waves"}), _request()
        )
        db = session_factory()
        try:
            row = db.query(LastCommand).filter(LastCommand.chat_id == "chat@c.us").one()
            assert row.prompt == "waves"
            assert row.message_id == "M1"
        finally:
            db.close()

    def test_clear_all(self, session_factory):
        store = LastCommandStore(session_factory)
        store.save("a@c.us", Decision(tool="openai_chat", args={"prompt": "x"}), _request())
        store.save("b@c.us", Decision(tool="openai_chat", args={"prompt": "y"}), _request())
        assert store.clear_all() == 2
        assert store.load("a@c.us") is None

    def test_chats_are_isolated(self, session_factory):
        store = LastCommandStore(session_factory)
        store.save("a@c.us", Decision(tool="openai_chat", args={"prompt": "x"}), _request())
        assert store.load("b@c.us") is None
