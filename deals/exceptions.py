"""Deal error taxonomy.

Every error raised while moving a deal carries a ``Reason`` from the point
where it is raised. Reconcilers read ``exc.reason`` to decide between a
quiet skip and a logged failure.
"""
from enum import Enum
from typing import Optional

class Reason(str, Enum):
    """Machine-readable outcome of a reconciliation attempt"""
    DEAL_NOT_FOUND = "DealNotFound"
    MISSING_ADDRESSES = "MissingAddresses"
    CONCURRENT_PROCESSING = "ConcurrentProcessing"
    ALREADY_CONFIRMED = "AlreadyConfirmed"
    ALREADY_PUBLISHED = "AlreadyPublished"
    ALREADY_RELEASED = "AlreadyReleased"
    ALREADY_REFUNDED = "AlreadyRefunded"
    INVALID_STATUS = "InvalidStatus"
    PAYMENT_NOT_RECEIVED = "PaymentNotReceived"
    NO_BRIEF_FOUND = "NoBriefFound"
    NOT_READY = "NotReady"
    NO_RELEASE_NEEDED = "NoReleaseNeeded"
    NO_REFUND_NEEDED = "NoRefundNeeded"
    TRANSACTION_NOT_FOUND = "TransactionNotFound"
    NETWORK_ERROR = "NetworkError"
    RATE_LIMIT_EXCEEDED = "RateLimitExceeded"
    PERMISSION_DENIED = "PermissionDenied"
    LOCK_LOST = "LockLost"
    UNKNOWN_ERROR = "UnknownError"

# Expected outcomes of racing or early workers: logged at debug and skipped
BENIGN = frozenset({
    Reason.CONCURRENT_PROCESSING,
    Reason.ALREADY_CONFIRMED,
    Reason.ALREADY_PUBLISHED,
    Reason.ALREADY_RELEASED,
    Reason.ALREADY_REFUNDED,
    Reason.PAYMENT_NOT_RECEIVED,
    Reason.NOT_READY,
    Reason.NO_RELEASE_NEEDED,
    Reason.NO_REFUND_NEEDED,
})

class DealError(Exception):
    """Base exception for deal operations"""
    def __init__(self, reason: Reason, message: str = "", deal_id: Optional[int] = None):
        self.reason = reason
        self.deal_id = deal_id
        prefix = f"[{reason.value}]"
        if deal_id is not None:
            prefix += f" deal {deal_id}"
        super().__init__(f"{prefix}: {message}" if message else prefix)

class DealNotFoundError(DealError):
    """Raised when a deal row does not exist"""
    def __init__(self, deal_id: int):
        super().__init__(Reason.DEAL_NOT_FOUND, "deal not found", deal_id)

class InvalidStatusError(DealError):
    """Raised when a deal is not in a status the operation accepts"""
    def __init__(self, deal_id: int, status: str, expected):
        self.status = status
        super().__init__(
            Reason.INVALID_STATUS,
            f"status is {status}, expected one of {', '.join(str(s) for s in expected)}",
            deal_id,
        )

class PermissionDeniedError(DealError):
    """Raised when a user acts on a deal they are not a party to"""
    def __init__(self, deal_id: int, user_id: int):
        super().__init__(Reason.PERMISSION_DENIED, f"user {user_id} may not act on this deal", deal_id)

def classify(exc: BaseException) -> Reason:
    """Return the reason an exception carries, UnknownError if none."""
    reason = getattr(exc, 'reason', None)
    return reason if isinstance(reason, Reason) else Reason.UNKNOWN_ERROR

def is_benign(exc: BaseException) -> bool:
    return classify(exc) in BENIGN
