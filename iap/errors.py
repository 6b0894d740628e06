"""
errors.py
Typed error taxonomy for in-app purchase flows, and the mapping from raw store
SDK errors and error kinds to user-facing copy
"""

from enum import Enum
from typing import Any, Optional, Tuple


class IAPErrorType(str, Enum):
    CONNECTION_FAILED = "CONNECTION_FAILED"
    PRODUCTS_NOT_FOUND = "PRODUCTS_NOT_FOUND"
    PURCHASE_CANCELLED = "PURCHASE_CANCELLED"
    PURCHASE_FAILED = "PURCHASE_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    RESTORE_FAILED = "RESTORE_FAILED"
    UNKNOWN = "UNKNOWN"


class IAPError(Exception):
    def __init__(self, type: IAPErrorType, message: str, original_error: Optional[Any] = None) -> None:
        super().__init__(message)
        self.type = type
        self.message = message
        self.original_error = original_error

    def __repr__(self) -> str:
        return f"IAPError({self.type.value}, {self.message!r})"


# Error codes the store SDKs use for a user-dismissed checkout
CANCELLED_CODES = {"E_USER_CANCELLED", "USER_CANCELLED", "PURCHASE_CANCELLED"}


class StoreError(Exception):
    """Error reported by the native store bridge, carrying the SDK error code."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code


def is_cancellation(error: Any) -> bool:
    if isinstance(error, IAPError):
        return error.type == IAPErrorType.PURCHASE_CANCELLED
    return getattr(error, "code", None) in CANCELLED_CODES


def classify_store_error(error: Any, default: IAPErrorType = IAPErrorType.PURCHASE_FAILED) -> IAPError:
    """Map a raw store error into the taxonomy. Typed errors pass through unchanged."""
    if isinstance(error, IAPError):
        return error
    if is_cancellation(error):
        return IAPError(IAPErrorType.PURCHASE_CANCELLED, "Purchase was cancelled", error)
    message = getattr(error, "message", None) or str(error) or "Purchase failed"
    return IAPError(default, message, error)


GENERIC_FAILURE = ("Something went wrong", "An unexpected error occurred. Please try again.")

# (title, message) per error kind; None means the outcome is silent
ERROR_COPY = {
    IAPErrorType.PURCHASE_CANCELLED: None,
    IAPErrorType.PURCHASE_FAILED: (
        "Purchase Failed",
        "An error occurred during purchase. Please try again.",
    ),
    IAPErrorType.VALIDATION_FAILED: (
        "Purchase Error",
        "There was an error processing your purchase. Please contact support if the issue persists.",
    ),
    IAPErrorType.RESTORE_FAILED: (
        "Restore Failed",
        "We couldn't restore your purchases. Please try again later.",
    ),
    IAPErrorType.CONNECTION_FAILED: (
        "Store Unavailable",
        "Failed to connect to the app store. Please check your connection and try again.",
    ),
    IAPErrorType.PRODUCTS_NOT_FOUND: (
        "Store Unavailable",
        "Subscriptions are not available right now. Please try again later.",
    ),
    IAPErrorType.UNKNOWN: GENERIC_FAILURE,
}


def user_message(error: BaseException) -> Optional[Tuple[str, str]]:
    """Toast copy for an error, or None when nothing should be shown."""
    if isinstance(error, IAPError):
        return ERROR_COPY.get(error.type, GENERIC_FAILURE)
    return GENERIC_FAILURE
