"""
Error taxonomy for the chat relay.

Every error carries the protocol code the dispatcher answers with, so a
handler only has to raise and the caller gets a stable code to branch on.
"""

from common import (
    INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND,
    PARSE_ERROR, RECIPIENT_NOT_FOUND,
)


class ChatError(Exception):
    """Base class for errors that map onto an error response."""

    code = INTERNAL_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ParseError(ChatError):
    code = PARSE_ERROR


class InvalidRequestError(ChatError):
    code = INVALID_REQUEST


class UnknownMethodError(ChatError):
    code = METHOD_NOT_FOUND

    def __init__(self, method):
        super().__init__(f"Method not found: '{method}'")
        self.method = method


class ValidationError(ChatError):
    """A required field is missing, empty or of the wrong type."""

    code = INVALID_PARAMS


class DuplicateUsernameError(InvalidRequestError):
    def __init__(self, username: str):
        super().__init__(f"Username '{username}' is already taken")
        self.username = username


class UnknownParticipantError(ValidationError):
    """A private message names a user that never registered."""

    def __init__(self, username: str):
        super().__init__(f"User '{username}' is not a registered user")
        self.username = username


class RecipientOfflineError(ChatError):
    code = RECIPIENT_NOT_FOUND

    def __init__(self, username: str):
        super().__init__(f"Recipient '{username}' not found or offline")
        self.username = username


class NotActiveError(ChatError):
    """The connection is not (or no longer) the current one for its user.

    Raised by the registry on a stale disconnect; never sent to a client.
    """


class CodecError(ValueError):
    pass
