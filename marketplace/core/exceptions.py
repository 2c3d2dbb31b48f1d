"""
Custom application exceptions
"""

from typing import Optional, Dict, Any


class MarketplaceException(Exception):
    """Base exception for the marketplace application"""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationError(MarketplaceException):
    """Authentication related errors"""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="AUTH_ERROR",
            status_code=401,
            details=details
        )


class AuthorizationError(MarketplaceException):
    """Authorization related errors"""

    def __init__(self, message: str = "Not authorized", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="AUTH_FORBIDDEN",
            status_code=403,
            details=details
        )


class ValidationError(MarketplaceException):
    """Malformed or missing input; raised before any database write"""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=400,
            details=details
        )


class NoFieldsError(ValidationError):
    """Partial update with nothing to update"""

    def __init__(self, message: str = "No fields to update"):
        super().__init__(message)
        self.code = "NO_FIELDS"


class NotFoundError(MarketplaceException):
    """Resource not found errors"""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id {identifier} not found"
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details={"resource": resource}
        )


class ConstraintError(MarketplaceException):
    """Foreign-key or uniqueness violation"""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="CONSTRAINT_VIOLATION",
            status_code=409,
            details=details
        )


class ConflictError(MarketplaceException):
    """Transition not allowed from the current state"""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="CONFLICT",
            status_code=409,
            details=details
        )


class GatewayError(MarketplaceException):
    """Payment provider call failed or returned a non-success status"""

    def __init__(self, provider: str, message: Optional[str] = None, provider_code: Optional[str] = None):
        details = {"provider": provider}
        if provider_code:
            details["provider_code"] = provider_code
        super().__init__(
            message=message or f"Payment provider {provider} is unavailable",
            code="GATEWAY_ERROR",
            status_code=502,
            details=details
        )
        self.provider = provider


class SignatureError(MarketplaceException):
    """Webhook signature errors"""

    def __init__(self, message: str = "Invalid webhook signature", code: str = "SIGNATURE_ERROR"):
        super().__init__(
            message=message,
            code=code,
            status_code=400
        )


class MissingSignatureError(SignatureError):
    """Webhook arrived without a signature or body"""

    def __init__(self, message: str = "Missing webhook signature or raw body"):
        super().__init__(message=message, code="MISSING_SIGNATURE")


class InvalidSignatureError(SignatureError):
    """Webhook signature did not verify"""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message=message, code="INVALID_SIGNATURE")
