"""
Error taxonomy for the marketplace.

Every failure a store or the order engine can report is a MarketplaceError
subclass. The HTTP layer renders them uniformly via register_error_handlers.
"""
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from logging_config import get_logger

logger = get_logger(__name__)


class MarketplaceError(Exception):
    status_code = 500
    message = "Server error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, **self.details}


class Unauthenticated(MarketplaceError):
    status_code = 401
    message = "Please login to access this resource"


class Forbidden(MarketplaceError):
    status_code = 403
    message = "Not authorized to access this resource"


class NotFound(MarketplaceError):
    status_code = 404
    message = "Resource not found"


class ProductNotFound(NotFound):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found", product_id=product_id)


class OrderNotFound(NotFound):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", order_id=order_id)


class UserNotFound(NotFound):
    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found", user_id=user_id)


class ValidationFailed(MarketplaceError):
    status_code = 400
    message = "Validation failed"


class DuplicateCredential(MarketplaceError):
    status_code = 409

    def __init__(self, field: str):
        super().__init__(f"An account with this {field} already exists", field=field)


class InvalidCredentials(MarketplaceError):
    status_code = 401
    message = "Invalid credentials"


class InsufficientStock(MarketplaceError):
    status_code = 409

    def __init__(self, product_id: str, available: int, requested: int):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for product {product_id}: {available} available, {requested} requested",
            product_id=product_id,
            available=available,
            requested=requested,
        )


class InvalidTransition(MarketplaceError):
    status_code = 409

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot change order status from '{current}' to '{requested}'",
            current=current,
            requested=requested,
        )


class Internal(MarketplaceError):
    status_code = 500
    message = "Server error"


class ServiceUnavailable(Internal):
    status_code = 503
    message = "Service temporarily unavailable"


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, error=exc.message, **exc.details)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(PyMongoError)
    async def storage_error_handler(request: Request, exc: PyMongoError):
        logger.error("Storage failure", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=500, content=Internal().to_dict())
