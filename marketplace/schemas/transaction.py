"""
Transaction and payment schemas for request/response models
"""

from typing import Optional, Dict, Any, List, Literal
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field, AliasChoices, field_validator

from marketplace.models.transaction import TransactionStatus, RefundStatus
from marketplace.schemas.base import BaseSchema
from marketplace.schemas.response import PaginationMeta


class FailureReason(BaseModel):
    """Why a payment attempt failed, as reported by the provider"""
    kind: Literal["failure"] = "failure"
    code: str = "payment_failed"
    message: str = ""


class RefundReason(BaseModel):
    """Free-text reason attached to a refund request"""
    kind: Literal["refund"] = "refund"
    text: str


class PaymentInitiateRequest(BaseModel):
    listing_id: int = Field(..., gt=0)
    seller_id: int = Field(..., gt=0)
    offer_id: Optional[int] = Field(None, gt=0)
    final_price: Decimal = Field(..., gt=0, max_digits=18, decimal_places=8)
    final_quantity: Decimal = Field(..., gt=0, max_digits=18, decimal_places=8)
    currency: str = Field(..., min_length=3, max_length=3)
    mineral_type: str = Field(..., min_length=2, max_length=100)
    provider: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def currency_must_be_uppercase(cls, v: str) -> str:
        if not v.isalpha() or not v.isupper():
            raise ValueError("Currency must be a 3-letter uppercase code (e.g. USD)")
        return v


class PaymentInitiateResponse(BaseModel):
    message: str = "Payment initiated"
    transaction_id: int
    checkout_url: Optional[str] = None
    status: TransactionStatus
    reused: bool = False
    already_paid: bool = False


class TransactionResponse(BaseSchema):
    id: int
    listing_id: int
    buyer_id: int
    seller_id: Optional[int] = None
    offer_id: Optional[int] = None
    final_price: Decimal
    final_quantity: Decimal
    currency: str
    status: TransactionStatus
    payment_provider: Optional[str] = None
    payment_gateway_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_status: RefundStatus
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("meta", "metadata"),
    )
    created_at: datetime
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TransactionListResponse(BaseModel):
    success: bool = True
    data: List[TransactionResponse]
    pagination: PaginationMeta


class CurrencyStatistics(BaseModel):
    currency: str
    total_transactions: int
    total_amount: Decimal
    completed_amount: Decimal
    average_transaction_amount: Decimal


class TransactionStatistics(BaseModel):
    """Ledger totals; amounts are reported per currency"""
    total_transactions: int = 0
    completed_transactions: int = 0
    pending_transactions: int = 0
    failed_transactions: int = 0
    refunded_transactions: int = 0
    by_currency: List[CurrencyStatistics] = Field(default_factory=list)


class TransactionStatusUpdate(BaseModel):
    status: TransactionStatus
    payment_gateway_id: Optional[str] = Field(None, max_length=255)
    reason: Optional[str] = Field(None, max_length=500)


class RefundRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=8)
    reason: Optional[str] = Field(None, min_length=1, max_length=500)


class RefundFailure(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class TransactionFilter(BaseModel):
    """Query filters for ledger listings"""
    buyer_id: Optional[int] = None
    seller_id: Optional[int] = None
    listing_id: Optional[int] = None
    offer_id: Optional[int] = None
    status: Optional[TransactionStatus] = None
    payment_provider: Optional[str] = None
    currency: Optional[str] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
    sort_by: Literal["created_at", "updated_at", "final_price", "status", "id"] = "created_at"
    sort_direction: Literal["asc", "desc"] = "desc"


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    event_id: Optional[str] = None
    transaction_id: Optional[int] = None
