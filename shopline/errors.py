from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PRECONDITION = "precondition"
    TRANSACTION = "transaction"
    NETWORK = "network"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.PRECONDITION: 401,
    ErrorKind.TRANSACTION: 500,
    ErrorKind.NETWORK: 502,
}


class PosError(Exception):
    kind: ErrorKind = ErrorKind.TRANSACTION

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "kind": self.kind.value}


class ValidationError(PosError):
    kind = ErrorKind.VALIDATION


class InsufficientStock(ValidationError):
    def __init__(self, product_name: str, available: int):
        super().__init__(f"Insufficient stock for product: {product_name}. Available: {available}")
        self.product_name = product_name
        self.available = available


class ProductNotFound(ValidationError):
    def __init__(self, product_ids):
        ids = sorted({str(p) for p in product_ids})
        super().__init__(f"One or more products not found: {', '.join(ids)}")
        self.product_ids = ids


class NotFoundError(PosError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(PosError):
    kind = ErrorKind.CONFLICT


class PreconditionError(PosError):
    kind = ErrorKind.PRECONDITION


class TransactionError(PosError):
    kind = ErrorKind.TRANSACTION


class NetworkError(PosError):
    kind = ErrorKind.NETWORK


_BY_KIND = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.PRECONDITION: PreconditionError,
    ErrorKind.TRANSACTION: TransactionError,
    ErrorKind.NETWORK: NetworkError,
}


def error_for_status(status: int, message: Optional[str] = None) -> PosError:
    """
    Map a transport status code back onto the closed error set.

    422 is FastAPI's request validation status; it is a validation failure
    from the caller's point of view. 403 is treated like 401: both mean the
    token cannot be used and the whole sync cycle should stop.
    """
    msg = (message or "").strip() or f"http {status}"
    if status in (400, 422):
        kind = ErrorKind.VALIDATION
    elif status == 404:
        kind = ErrorKind.NOT_FOUND
    elif status == 409:
        kind = ErrorKind.CONFLICT
    elif status in (401, 403):
        kind = ErrorKind.PRECONDITION
    elif status in (502, 503, 504):
        kind = ErrorKind.NETWORK
    else:
        kind = ErrorKind.TRANSACTION
    return _BY_KIND[kind](msg)
