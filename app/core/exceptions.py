# FILE: app/core/exceptions.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class RxError(Exception):
    """
    Base class for every failure the prescription / dispensing core reports.

    Each subclass carries the HTTP status the API layer should answer with
    and a stable machine-readable `code`; `details` is passed through to the
    error envelope untouched.
    """

    status_code: int = 400
    code: str = "RX_ERROR"

    def __init__(self, msg: str, *, details: Any = None) -> None:
        super().__init__(msg)
        self.msg = msg
        self.details = details


class NotFound(RxError):
    status_code = 404
    code = "NOT_FOUND"


class Forbidden(RxError):
    status_code = 403
    code = "FORBIDDEN"


class SafetyViolation(RxError):
    """Allergy / contraindication / major interaction found at creation."""

    status_code = 422
    code = "SAFETY_VIOLATION"

    def __init__(self, msg: str, conflicts: List[Dict[str, Any]]) -> None:
        super().__init__(msg, details={"conflicts": conflicts})
        self.conflicts = conflicts


class InsufficientStock(RxError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, msg: str, unavailable: List[Dict[str, Any]]) -> None:
        super().__init__(msg, details={"unavailable": unavailable})
        self.unavailable = unavailable


class VerificationFailed(RxError):
    status_code = 400
    code = "VERIFICATION_FAILED"


class InvalidTransition(RxError):
    status_code = 409
    code = "INVALID_TRANSITION"


class InvalidState(RxError):
    status_code = 409
    code = "INVALID_STATE"


class ConcurrentModification(RxError):
    status_code = 409
    code = "CONCURRENT_MODIFICATION"


class InternalConsistencyError(RxError):
    """
    Stock ledger observed a state it must never be in. The request is
    aborted and the transaction rolled back; never retry on this.
    """

    status_code = 500
    code = "INTERNAL_CONSISTENCY"


class BatchExpired(InternalConsistencyError):
    code = "BATCH_EXPIRED"


class StockInvariantError(InternalConsistencyError):
    code = "STOCK_INVARIANT"


def conflict_entry(kind: str,
                   message: str,
                   medicine_id: Optional[int] = None,
                   **extra: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": kind, "message": message}
    if medicine_id is not None:
        out["medicine_id"] = medicine_id
    out.update(extra)
    return out
