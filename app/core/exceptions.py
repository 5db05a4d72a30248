"""
Error taxonomy for the escrow core.

Business errors (not found, bad request, invalid transition, insufficient
balance) are surfaced to the caller as-is and never retried. Only
``TransientConflictError`` means "try again".
"""
from typing import Any, Dict, Iterable, Optional

from fastapi import status


class EscrowError(Exception):
    """Base class; carries an HTTP status and structured details."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "type": self.__class__.__name__,
            "details": self.details,
        }


class NotFoundError(EscrowError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class BadRequestError(EscrowError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_400_BAD_REQUEST, details)


class ForbiddenError(EscrowError):
    def __init__(self, message: str = "Access forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_403_FORBIDDEN, details)


class InvalidTransitionError(BadRequestError):
    def __init__(self, from_status, to_status, allowed: Iterable):
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = tuple(allowed)
        names = ", ".join(_name(s) for s in self.allowed) or "None"
        super().__init__(
            f"Invalid status transition: cannot change from {_name(from_status)} to {_name(to_status)}. "
            f"Allowed transitions: {names}",
            {
                "from_status": _name(from_status),
                "to_status": _name(to_status),
                "allowed": [_name(s) for s in self.allowed],
            },
        )


class InsufficientBalanceError(BadRequestError):
    """
    Raised when a wallet cannot cover a lock or deduction.

    ``role`` is ``"customer"`` or ``"worker"``; for workers ``breakdown`` holds
    the deposit pool and the free balance so the presentation layer can render
    an actionable message without querying the ledger again.
    """

    def __init__(self, required, available, role: Optional[str] = None, breakdown: Optional[Dict[str, Any]] = None):
        self.required = required
        self.available = available
        self.role = role
        self.breakdown = breakdown

        if role == "customer":
            message = (
                f"Customer has insufficient balance to place this order. "
                f"Required: ${required}, available: ${available}"
            )
        elif role == "worker":
            message = (
                f"Worker has insufficient eligibility to accept this order. "
                f"Required deposit: ${required}, total eligibility: ${available}"
            )
            if breakdown:
                message += f" (deposit ${breakdown['deposit']} + balance ${breakdown['balance']})"
        else:
            message = f"Insufficient balance. Required: ${required}, available: ${available}"

        details: Dict[str, Any] = {"required": str(required), "available": str(available), "role": role}
        if breakdown:
            details["breakdown"] = {k: str(v) for k, v in breakdown.items()}
        super().__init__(message, details)


class TransientConflictError(EscrowError):
    """Storage-level conflict (deadlock, serialization failure) that may succeed on retry."""

    def __init__(self, message: str = "The operation conflicted with a concurrent update, please retry",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_409_CONFLICT, details)


def _name(value) -> str:
    return getattr(value, "value", None) or str(value)
