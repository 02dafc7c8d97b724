"""
Pro subscription billing through Dodo Payments hosted checkout.
"""

import os
import logging
from typing import Optional, Dict, Any

from dodopayments import DodoPayments

import studio_store
import supabase_client


logger = logging.getLogger(__name__)

DODO_API_KEY = os.environ.get("DODO_PAYMENTS_API_KEY", "")
DODO_ENV = os.environ.get("DODO_PAYMENTS_ENVIRONMENT", "test_mode")
DODO_WEBHOOK_KEY = os.environ.get("DODO_PAYMENTS_WEBHOOK_KEY", "")
DODO_SUBSCRIPTION_PRODUCT_ID = os.environ.get("DODO_SUBSCRIPTION_PRODUCT_ID", "")
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

ACTIVE_STATUSES = ("active", "trialing")


class BillingNotConfigured(Exception):
    pass


class CheckoutError(Exception):
    pass


class WebhookSignatureError(Exception):
    pass


class WebhookProcessingError(Exception):
    """A verified event that could not be applied. It stays unrecorded so a redelivery retries it."""


dodo_client = None
if DODO_API_KEY:
    dodo_client = DodoPayments(
        bearer_token=DODO_API_KEY,
        environment=DODO_ENV,
        webhook_key=DODO_WEBHOOK_KEY,
    )
    logger.info("Dodo Payments client initialized")


def get_client():
    return dodo_client


def create_checkout(user_id: str, email: str, name: Optional[str] = None) -> Dict[str, Optional[str]]:
    """
    Create a hosted checkout session for the Pro plan.

    Returns:
        {"checkout_url": ..., "session_id": ...}
    """
    client = get_client()
    if not client or not DODO_SUBSCRIPTION_PRODUCT_ID:
        raise BillingNotConfigured("Billing is not configured")

    session = client.checkout_sessions.create(
        product_cart=[{"product_id": DODO_SUBSCRIPTION_PRODUCT_ID, "quantity": 1}],
        customer={"email": email, "name": name or email.split("@")[0]},
        metadata={"user_id": user_id},
        return_url=f"{PUBLIC_BASE_URL}/payment/success",
    )

    checkout_url = getattr(session, "checkout_url", None) or getattr(session, "url", None)
    session_id = getattr(session, "session_id", None)
    if not checkout_url:
        raise CheckoutError("Checkout URL missing from billing provider response")

    logger.info(f"Checkout session created for {user_id}: {session_id}")
    return {"checkout_url": checkout_url, "session_id": session_id}


def profile_status_for(subscription_status: str) -> str:
    return "pro" if subscription_status.lower() in ACTIVE_STATUSES else "free"


def handle_webhook(raw_body: bytes, headers: Dict[str, str]) -> Dict[str, Any]:
    """
    Verify and apply a subscription webhook. Idempotent on webhook-id.
    """
    client = get_client()
    if not client:
        raise BillingNotConfigured("Billing is not configured")

    webhook_id = headers.get("webhook-id", "")
    if not webhook_id:
        raise ValueError("Missing webhook-id")

    if studio_store.is_webhook_processed(webhook_id):
        logger.info(f"Webhook {webhook_id} already processed")
        return {"received": True, "duplicate": True}

    if not supabase_client.is_service_configured():
        raise BillingNotConfigured("SUPABASE_SERVICE_ROLE_KEY must be set to apply subscription webhooks")

    try:
        unwrapped = client.webhooks.unwrap(raw_body, headers=headers)
    except Exception as exc:
        logger.error(f"Webhook signature verification failed: {exc}")
        raise WebhookSignatureError("Invalid signature")

    payload = unwrapped.model_dump() if hasattr(unwrapped, "model_dump") else unwrapped
    if not isinstance(payload, dict):
        payload = {}

    event_type = payload.get("type", "")
    data = payload.get("data") or {}
    subscription = data.get("subscription") or (data if data.get("payload_type") == "Subscription" else {})

    if event_type.startswith("subscription.") or subscription:
        metadata = subscription.get("metadata") or {}
        customer = subscription.get("customer") or {}
        user_id = metadata.get("user_id")

        if user_id:
            status = (subscription.get("status") or event_type.replace("subscription.", "") or "unknown").lower()
            studio_store.set_subscription(
                user_id=user_id,
                provider="dodo",
                customer_id=customer.get("customer_id") or subscription.get("customer_id"),
                subscription_id=subscription.get("subscription_id") or subscription.get("id"),
                status=status,
                period_start=subscription.get("previous_billing_date") or subscription.get("period_start"),
                period_end=subscription.get("next_billing_date") or subscription.get("period_end"),
                plan_code=subscription.get("product_id"),
            )
            try:
                supabase_client.set_subscription_status(user_id, profile_status_for(status))
            except (supabase_client.ProfileError, supabase_client.SupabaseNotConfigured) as e:
                logger.error(f"Webhook {webhook_id}: profile update failed for {user_id}: {e}")
                raise WebhookProcessingError(f"Could not update profile: {e}")
        else:
            logger.warning(f"Subscription event {event_type} has no user_id metadata")

    studio_store.record_webhook(webhook_id, event_type)
    return {"received": True}
