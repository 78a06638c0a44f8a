class LedgerError(Exception):
    pass


class EventValidationError(LedgerError, ValueError):
    """Malformed trigger payload. Reported back to the caller, never retried."""


class TransientStoreError(LedgerError):
    """The store could not be reached; the unit of work was rolled back."""


class AdapterError(LedgerError):
    pass


class InsightError(AdapterError):
    pass


class NotificationError(AdapterError):
    pass


class InvariantViolation(LedgerError):
    """A ledger write would leave postings and balances out of step."""
