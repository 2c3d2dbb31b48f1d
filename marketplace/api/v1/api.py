"""
Main API Router
Aggregates all API endpoints for v1
"""

from fastapi import APIRouter
from marketplace.api.v1.endpoints import payments, webhooks

api_router = APIRouter()

# Webhook routes first so /payments/webhook/... never reaches the /{transaction_id} routes
api_router.include_router(webhooks.router, prefix="/payments", tags=["webhooks"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
