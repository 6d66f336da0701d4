class ExpenseAssistantError(Exception):
    """Base class for errors raised by the expense pipeline."""


class AdapterUnavailable(ExpenseAssistantError):
    """The extraction or transcription service failed (timeout, bad payload, non-2xx)."""


class PersistenceError(ExpenseAssistantError):
    """A storage call failed."""


class NoMatchingUser(ExpenseAssistantError):
    """A bank email could not be mapped to any known user."""


class ValidationRejected(ExpenseAssistantError):
    """The extracted payload is structurally invalid or carries a non-positive amount."""


class LinkCodeError(ExpenseAssistantError):
    """A dashboard link code is unknown, already used or expired."""
