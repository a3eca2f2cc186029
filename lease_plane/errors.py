"""
Lease Plane Error Taxonomy
==========================

Typed errors raised by the ledger, node selector and orchestrator.
Each carries a machine-readable kind plus a human-readable reason.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    NO_CAPACITY = "NO_CAPACITY"
    UNAVAILABLE = "UNAVAILABLE"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
    GRACE_EXPIRED = "GRACE_EXPIRED"
    INCONSISTENCY = "INCONSISTENCY"


class LeaseError(Exception):
    """Base exception for lease plane errors."""
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(f"[{self.kind.value}] {reason}")

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind.value, "reason": self.reason}


class ValidationError(LeaseError):
    """Bad plan/account reference or a request the plan rules forbid."""
    kind = ErrorKind.VALIDATION


class NotFoundError(LeaseError):
    kind = ErrorKind.NOT_FOUND


class InvalidStateError(LeaseError):
    """Record is not in a state that allows the operation."""
    kind = ErrorKind.INVALID_STATE


class InsufficientFundsError(LeaseError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class OutOfStockError(LeaseError):
    kind = ErrorKind.OUT_OF_STOCK


class NoCapacityError(LeaseError):
    """No host can take the instance. `fleet_empty` separates empty from full."""
    kind = ErrorKind.NO_CAPACITY

    def __init__(self, reason: str, fleet_empty: bool = False, details: Optional[Dict[str, Any]] = None):
        self.fleet_empty = fleet_empty
        super().__init__(reason, details)


class HostUnavailableError(LeaseError):
    kind = ErrorKind.UNAVAILABLE


class UpstreamUnavailableError(LeaseError):
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class UpstreamFailureError(LeaseError):
    kind = ErrorKind.UPSTREAM_FAILURE


class GraceExpiredError(LeaseError):
    kind = ErrorKind.GRACE_EXPIRED


class PersistenceError(LeaseError):
    """Local write failed after the remote side already changed."""
    kind = ErrorKind.INCONSISTENCY
