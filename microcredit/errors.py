"""Exception hierarchy shared by the ledgers, storage and API layers."""


class MicrocreditError(Exception):
    """Base exception for all microcredit errors."""


class NotFoundError(MicrocreditError, LookupError):
    """Raised when a referenced loan, plan, installment or deposit is absent."""


class ValidationError(MicrocreditError, ValueError):
    """Raised for missing fields, non-positive amounts or insufficient funds."""


class ConcurrencyError(MicrocreditError):
    """Raised when a transaction conflicts with a concurrent writer."""


class RemoteIOError(MicrocreditError):
    """Raised when the storage backend fails; the cause is chained."""
