class LedgerError(Exception):
    """Base class for failures raised by the ledger services."""


class NotFound(LedgerError):
    pass


class Unauthorized(LedgerError):
    """The record exists but belongs to a different owner."""


class LedgerValidationError(LedgerError, ValueError):
    pass


class TransientStoreError(LedgerError):
    """The backing store could not be reached or timed out."""
