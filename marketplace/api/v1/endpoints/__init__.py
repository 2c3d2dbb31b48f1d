"""
API endpoints module
"""

from . import health, payments, webhooks

__all__ = [
    "health",
    "payments",
    "webhooks",
]
