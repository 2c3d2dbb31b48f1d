"""
Pydantic schemas for request and response validation
"""

from marketplace.schemas.transaction import (
    FailureReason,
    RefundReason,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    TransactionResponse,
    TransactionListResponse,
    TransactionStatusUpdate,
    TransactionFilter,
    TransactionStatistics,
    CurrencyStatistics,
    RefundRequest,
    RefundFailure,
    WebhookAck
)
from marketplace.schemas.response import (
    ErrorDetail,
    ErrorResponse,
    PaginationMeta
)

__all__ = [
    "FailureReason",
    "RefundReason",
    "PaymentInitiateRequest",
    "PaymentInitiateResponse",
    "TransactionResponse",
    "TransactionListResponse",
    "TransactionStatusUpdate",
    "TransactionFilter",
    "TransactionStatistics",
    "CurrencyStatistics",
    "RefundRequest",
    "RefundFailure",
    "WebhookAck",
    "ErrorDetail",
    "ErrorResponse",
    "PaginationMeta"
]
