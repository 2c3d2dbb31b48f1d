"""
Payment API Endpoints
Checkout initiation, ledger queries, manual status changes and refunds
"""

import logging
import math
from typing import List

from fastapi import APIRouter, Depends, status

from marketplace.api.v1.dependencies import get_orchestrator
from marketplace.core.exceptions import AuthorizationError, NotFoundError
from marketplace.core.security import get_current_user, require_admin, require_roles
from marketplace.models.user import User, UserRole
from marketplace.schemas.response import PaginationMeta
from marketplace.schemas.transaction import (
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    RefundFailure,
    RefundRequest,
    TransactionFilter,
    TransactionListResponse,
    TransactionResponse,
    TransactionStatistics,
    TransactionStatusUpdate,
)
from marketplace.services.payment_orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=PaymentInitiateResponse, status_code=status.HTTP_201_CREATED)
async def initiate_payment(
    request: PaymentInitiateRequest,
    current_user: User = Depends(require_roles(UserRole.BUYER)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Open a hosted checkout for a listing or an accepted offer"""
    result = await orchestrator.initiate_payment(
        listing_id=request.listing_id,
        buyer_id=current_user.id,
        seller_id=request.seller_id,
        price=request.final_price,
        quantity=request.final_quantity,
        currency=request.currency,
        product_label=f"{request.mineral_type} x {request.final_quantity}",
        offer_id=request.offer_id,
        provider=request.provider,
        customer_email=current_user.email,
    )

    if result.already_paid:
        message = "Payment already completed"
    elif result.reused:
        message = "Existing checkout session reused"
    else:
        message = "Checkout session created"

    return PaymentInitiateResponse(
        message=message,
        transaction_id=result.transaction_id,
        checkout_url=result.redirect_url,
        status=result.status,
        reused=result.reused,
        already_paid=result.already_paid,
    )


@router.get("/me", response_model=List[TransactionResponse])
async def my_transactions(
    current_user: User = Depends(get_current_user),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Transactions where the caller is the buyer or the seller"""
    return await orchestrator.get_user_transactions(current_user.id)


@router.get("", response_model=TransactionListResponse)
async def list_transactions(
    filters: TransactionFilter = Depends(),
    current_user: User = Depends(require_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    items, total = await orchestrator.list_transactions(filters)
    total_pages = math.ceil(total / filters.limit) if total else 0
    return TransactionListResponse(
        data=[TransactionResponse.model_validate(item) for item in items],
        pagination=PaginationMeta(
            page=filters.page,
            per_page=filters.limit,
            total=total,
            total_pages=total_pages,
            has_next=filters.page < total_pages,
            has_prev=filters.page > 1,
        ),
    )


@router.get("/statistics", response_model=TransactionStatistics)
async def transaction_statistics(
    filters: TransactionFilter = Depends(),
    current_user: User = Depends(require_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Counts by status and per-currency amounts for the filtered ledger"""
    return TransactionStatistics(**await orchestrator.get_statistics(filters))


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: int,
    current_user: User = Depends(get_current_user),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    transaction = await orchestrator.get_transaction(transaction_id)
    if transaction is None:
        raise NotFoundError("Transaction", transaction_id)

    if current_user.role != UserRole.ADMIN and current_user.id not in (transaction.buyer_id, transaction.seller_id):
        raise AuthorizationError("Not a party to this transaction")

    return transaction


@router.put("/{transaction_id}/status", response_model=TransactionResponse)
async def update_transaction_status(
    transaction_id: int,
    update: TransactionStatusUpdate,
    current_user: User = Depends(require_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Manual reconciliation: apply a status the provider confirmed out of band"""
    logger.info(f"Admin {current_user.id} setting transaction {transaction_id} to {update.status.value}")
    return await orchestrator.update_status(
        transaction_id,
        update.status,
        reason=update.reason,
        payment_gateway_id=update.payment_gateway_id,
    )


@router.post("/{transaction_id}/refund", response_model=TransactionResponse)
async def request_refund(
    transaction_id: int,
    refund: RefundRequest,
    current_user: User = Depends(require_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.request_refund(transaction_id, refund.amount, refund.reason)


@router.post("/{transaction_id}/refund/complete", response_model=TransactionResponse)
async def complete_refund(
    transaction_id: int,
    current_user: User = Depends(require_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.complete_refund(transaction_id)


@router.post("/{transaction_id}/refund/fail", response_model=TransactionResponse)
async def fail_refund(
    transaction_id: int,
    failure: RefundFailure,
    current_user: User = Depends(require_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.fail_refund(transaction_id, failure.reason)
