"""
Error types raised by the service layer.

All of them are HTTPException subclasses, so FastAPI renders them directly.
"""

from typing import Optional

from fastapi import HTTPException


class ValidationFailed(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class NotAuthenticated(HTTPException):
    def __init__(self, detail: str = "Not authenticated"):
        super().__init__(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


class Forbidden(HTTPException):
    def __init__(self, detail: str = "Forbidden"):
        super().__init__(status_code=403, detail=detail)


class NotFound(HTTPException):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=404, detail=detail)


class Conflict(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)


class InsufficientStock(HTTPException):
    """A line item asks for more units than the product has left."""

    def __init__(self, product_id: str, name: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            status_code=409,
            detail={
                "message": f"Insufficient stock for {name} (available: {available})",
                "product_id": product_id,
                "requested": requested,
                "available": available,
            },
        )


class StoreUnavailable(HTTPException):
    def __init__(self, detail: Optional[str] = None):
        super().__init__(status_code=503, detail=detail or "The data store is unavailable, please try again")
