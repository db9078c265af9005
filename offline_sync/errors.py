"""
Error types raised by the offline sync service.

Every error derives from ValueError so callers that only care about
"the request was bad" can keep catching ValueError. The ``retryable``
flag tells the retry policy whether a failed offline item may be
re-submitted later or must be parked as permanently failed.
"""


class OfflineSyncError(ValueError):
    """Base class for offline sync errors"""
    retryable = False


class OfflineValidationError(OfflineSyncError):
    """Offline transaction payload failed policy validation"""


class QueueFullError(OfflineSyncError):
    """User already has the maximum number of outstanding offline transactions"""


class UnsupportedTransactionTypeError(OfflineSyncError):
    """Transaction type has no sync handler"""


class InsufficientFundsError(OfflineSyncError):
    """Wallet balance is lower than the requested debit"""
    retryable = True


class RecipientNotFoundError(OfflineSyncError):
    """Recipient could not be resolved to a wallet"""
    retryable = True


class WalletNotFoundError(OfflineSyncError):
    """Wallet does not exist"""
    retryable = True


class UserNotFoundError(OfflineSyncError):
    """User does not exist or is inactive"""


class ConcurrencyConflictError(OfflineSyncError):
    """Wallet changed between read and write"""
    retryable = True


class DuplicateReferenceError(OfflineSyncError):
    """A ledger transaction with this reference already exists"""


class InvalidStateTransitionError(OfflineSyncError):
    """Offline transaction cannot move to the requested state"""


class SyncUnavailableError(OfflineSyncError):
    """The sync server could not be reached"""
    retryable = True


def is_retryable(error: Exception) -> bool:
    """Whether a failure may succeed on a later attempt"""
    return bool(getattr(error, "retryable", False))
