from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import relaybot.models  # noqa: F401
from relaybot.database import Base
from relaybot.schemas.webhook import GreenApiWebhook


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("GREEN_API_WEBHOOK_TOKEN", "test-token")
    monkeypatch.setenv("GREEN_API_ID_INSTANCE", "1101000001")
    monkeypatch.setenv("GREEN_API_TOKEN_INSTANCE", "test-instance-token")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")


@pytest.fixture
def session_factory():
    """Session factory bound to a fresh in-memory database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def transport():
    """Green API stand-in recording every outbound call."""
    fake = Mock()
    fake.send_text = AsyncMock(return_value={"idMessage": "OUT1"})
    fake.send_file = AsyncMock(return_value={"idMessage": "OUT2"})
    fake.send_poll = AsyncMock(return_value={"idMessage": "OUT3"})
    fake.send_location = AsyncMock(return_value={"idMessage": "OUT4"})
    fake.get_message = AsyncMock(return_value=None)
    fake.get_contacts = AsyncMock(return_value=[])
    fake.download_file = AsyncMock(return_value=b"")
    return fake


def _sender(chat_id: str, name: str) -> dict:
    return {"chatId": chat_id, "sender": chat_id, "senderName": name, "senderContactName": name, "chatName": name}


@pytest.fixture
def make_text_event():
    def _make(
        text: str,
        id_message: str = "MSG1",
        chat_id: str = "972500000001@c.us",
        outgoing: bool = False,
        name: str = "Dana",
    ) -> GreenApiWebhook:
        return GreenApiWebhook.model_validate(
            {
                "typeWebhook": "outgoingMessageReceived" if outgoing else "incomingMessageReceived",
                "idMessage": id_message,
                "timestamp": 1700000000,
                "senderData": _sender(chat_id, name),
                "messageData": {"typeMessage": "textMessage", "textMessageData": {"textMessage": text}},
            }
        )

    return _make


@pytest.fixture
def make_event():
    """Build an event from a raw ``messageData`` dict."""

    def _make(
        message_data: dict,
        id_message: str = "MSG1",
        chat_id: str = "972500000001@c.us",
        outgoing: bool = False,
        name: str = "Dana",
    ) -> GreenApiWebhook:
        return GreenApiWebhook.model_validate(
            {
                "typeWebhook": "outgoingMessageReceived" if outgoing else "incomingMessageReceived",
                "idMessage": id_message,
                "timestamp": 1700000000,
                "senderData": _sender(chat_id, name),
                "messageData": message_data,
            }
        )

    return _make
