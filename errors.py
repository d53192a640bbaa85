"""
Error taxonomy for the order core.

Every failure the core raises is a MarketplaceError. The HTTP layer maps
them to responses using ``status_code`` and ``code``; ``context`` carries
the details a caller needs to act (current status, missing field, ...).
"""
from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        body.update(self.context)
        return body


class ValidationError(MarketplaceError):
    status_code = 422
    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, **context: Any):
        if field:
            context["field"] = field
        super().__init__(message, **context)


class AccessDenied(MarketplaceError):
    status_code = 403
    code = "access_denied"


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"


class InvalidTransition(MarketplaceError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, requested: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot move order from '{current}' to '{requested}'",
            current=current,
            requested=requested,
        )


class InvalidRevision(MarketplaceError):
    status_code = 422
    code = "invalid_revision"


class BelowMinimum(MarketplaceError):
    status_code = 422
    code = "below_minimum"

    def __init__(self, subtotal: float, minimum: float):
        super().__init__(
            f"Order subtotal {subtotal} is below the shop minimum of {minimum}",
            subtotal=subtotal,
            minimum=minimum,
        )


class ShopUnavailable(MarketplaceError):
    status_code = 422
    code = "shop_unavailable"


class PricingUnavailable(MarketplaceError):
    status_code = 503
    code = "pricing_unavailable"


class ConcurrencyConflict(MarketplaceError):
    status_code = 409
    code = "concurrency_conflict"


class AlreadyRated(MarketplaceError):
    status_code = 409
    code = "already_rated"


class PersistenceError(MarketplaceError):
    status_code = 500
    code = "persistence_error"
