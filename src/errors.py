"""Error taxonomy shared by the store, the services and the HTTP layer."""

from typing import Any, Dict, Optional


class GiftlockError(Exception):
    """Base class for every error the service raises on purpose."""

    code = "UNEXPECTED_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(GiftlockError):
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(GiftlockError):
    code = "NOT_FOUND_ERROR"
    http_status = 404


class ConflictError(GiftlockError):
    code = "CONFLICT_ERROR"
    http_status = 409


class AlreadyClaimedError(ConflictError):
    code = "ALREADY_CLAIMED"


class PaymentPendingError(GiftlockError):
    code = "PAYMENT_PENDING"
    http_status = 409


class GiftNotLockedError(PaymentPendingError):
    """Payment confirmed but the principal is not yet held by the time-lock contract."""

    code = "GIFT_NOT_LOCKED"


class NoWalletAvailableError(GiftlockError):
    code = "NO_WALLET_AVAILABLE"
    http_status = 503


class NetworkError(GiftlockError):
    """Chain RPC unreachable or timed out after retries."""

    code = "NETWORK_ERROR"
    http_status = 503


class ContractError(GiftlockError):
    """Transaction reverted or was rejected on-chain."""

    code = "CONTRACT_ERROR"
    http_status = 502


class DatabaseError(GiftlockError):
    code = "DATABASE_ERROR"
    http_status = 500
