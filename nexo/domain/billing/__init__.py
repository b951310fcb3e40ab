"""Billing domain - subscriptions, dunning and payment gateway webhooks"""

from .router import router, webhooks_router

__all__ = ["router", "webhooks_router"]
