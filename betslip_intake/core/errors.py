"""
Exception hierarchy for the intake engine and its external collaborators.
"""


class IntakeError(Exception):
    """Base error for the betslip intake bot."""


class ExtractionError(IntakeError):
    """Raised when a slip image cannot be turned into a record."""


class ExtractionNotAuthorized(ExtractionError):
    """Raised when the owner must link their account before submitting slips."""


class LedgerError(IntakeError):
    """Raised when the ledger ingestion service rejects or fails a request."""

    def __init__(self, message: str, status_code: int = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StaleReferenceError(IntakeError):
    """Raised when an action refers to a batch, item or prompt that no longer exists."""


class ChatChannelError(IntakeError):
    """Raised when a message cannot be sent or edited on the chat channel."""


class ActionDecodeError(IntakeError):
    """Raised when callback data cannot be decoded into an action."""


__all__ = [
    "IntakeError",
    "ExtractionError",
    "ExtractionNotAuthorized",
    "LedgerError",
    "StaleReferenceError",
    "ChatChannelError",
    "ActionDecodeError",
]
