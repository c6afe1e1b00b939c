"""Error taxonomy shared by all storefront services.

Domain code raises these; every FastAPI app installs
``register_error_handlers`` so that callers receive a typed JSON failure
(``{"error": code, "message": ..., "reason": ...}``) instead of a 500.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class PromotionErrorReason(str, Enum):
    """Why a promotion could not be applied."""
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    BELOW_MINIMUM = "below_minimum"
    EXHAUSTED = "exhausted"
    REQUIRES_AUTH = "requires_auth"
    ALREADY_APPLIED = "already_applied"
    NO_ELIGIBLE_ITEMS = "no_eligible_items"


class StorefrontError(Exception):
    """Base class for expected, caller-visible failures."""

    code = "storefront_error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class NotFound(StorefrontError):
    code = "not_found"
    status_code = 404


class InsufficientStock(StorefrontError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(
        self,
        message: str,
        requested: Optional[int] = None,
        available: Optional[int] = None,
        **details: Any,
    ):
        super().__init__(message, requested=requested, available=available, **details)
        self.requested = requested
        self.available = available


class PromotionInvalid(StorefrontError):
    code = "promotion_invalid"
    status_code = 400

    def __init__(self, reason: PromotionErrorReason, message: str, **details: Any):
        super().__init__(message, reason=reason.value, **details)
        self.reason = reason


class PaymentFailed(StorefrontError):
    code = "payment_failed"
    status_code = 402


class FulfillmentFailed(StorefrontError):
    code = "fulfillment_failed"
    status_code = 502


class Unauthorized(StorefrontError):
    code = "unauthorized"
    status_code = 401


class InvalidTransition(StorefrontError):
    code = "invalid_transition"
    status_code = 409


def register_error_handlers(app: FastAPI):
    """Render StorefrontError subclasses as typed JSON failures."""

    @app.exception_handler(StorefrontError)
    async def handle_storefront_error(request: Request, exc: StorefrontError):
        status_code = exc.status_code
        if isinstance(exc, PromotionInvalid) and exc.reason == PromotionErrorReason.REQUIRES_AUTH:
            status_code = 401

        logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())
