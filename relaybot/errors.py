"""Error taxonomy of the command engine.

Every error carries a localized ``user_message`` that is safe to send to the chat, while the
exception text itself stays in the logs.
"""

from typing import Optional


class RelaybotError(Exception):
    code = "unknown"
    default_user_message = "לא הצלחתי לעבד את הבקשה"

    def __init__(self, message: str, *, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message


class AuthError(RelaybotError):
    """Bad or missing webhook token. Fails the HTTP request itself."""

    code = "auth_error"

    def __init__(self, message: str, *, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class ValidationError(RelaybotError):
    """Required text or media is missing from a request."""

    code = "validation_error"


class MediaResolutionError(RelaybotError):
    code = "media_error"


class ToolExecutionError(RelaybotError):
    code = "tool_error"

    def __init__(self, tool: str, message: str, *, user_message: Optional[str] = None):
        super().__init__(message, user_message=user_message or f"❌ שגיאה בהפעלת {tool}. נסה שוב מאוחר יותר.")
        self.tool = tool


class RetryStateError(RelaybotError):
    """Nothing to retry. Shown to the user, not treated as a fault."""

    code = "retry_state"
    default_user_message = "אין פקודה קודמת לחזור עליה. זו הפעם הראשונה שאתה מבקש משהו."


class TransportError(RelaybotError):
    code = "transport_error"
