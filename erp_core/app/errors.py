"""
Business errors raised by the service layer.

Routers translate them into HTTP responses: NotFoundError -> 404,
PermissionDeniedError -> 403, everything else -> 400.
"""

from typing import List, Optional

from fastapi import HTTPException, status


class ERPError(Exception):
    """Base exception for business operations"""
    pass


class NotFoundError(ERPError):
    """Referenced row does not exist"""
    pass


class PermissionDeniedError(ERPError):
    """Caller is inactive or lacks a permission"""
    pass


class InventoryError(ERPError):
    """Base exception for inventory operations"""
    pass


class InsufficientStockError(InventoryError):
    """Raised when a transition would consume more than is on hand"""

    def __init__(self, message: str, shortages: Optional[List[dict]] = None):
        super().__init__(message)
        self.shortages = shortages or []


class InsufficientFundsError(ERPError):
    """Raised when a treasury would go below zero"""
    pass


class InvalidOperationError(ERPError):
    """Raised when an operation breaks a business rule"""
    pass


class InvalidTransitionError(InvalidOperationError):
    """Raised when a document is not in a status that allows the transition"""
    pass


def http_error(exc: ERPError) -> HTTPException:
    """Translate a service error into the HTTP response a router raises"""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, InsufficientStockError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "shortages": exc.shortages},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
