"""
Stripe Billing Client
=====================
Thin wrapper around the Stripe API used by event ingestion, the reconciliation
sweep and the billing routes.

Key Functionality:
- Retrieves and lists subscriptions (returned as SubscriptionPayload models).
- Retrieves customers for account resolution.
- Creates Checkout and Billing Portal sessions.
- Verifies webhook signatures.

Every SDK error is translated to UpstreamUnavailable at this boundary.
"""

from functools import lru_cache, wraps
from typing import List, Optional

import stripe

from config import settings
from services.billing_models import SubscriptionPayload
from services.exceptions import InvalidBillingEvent, UpstreamUnavailable
from utils.logger import log_error, log_info


@lru_cache(maxsize=1)
def configure_stripe():
    """Sets the API key, version and a timeout-bound HTTP client once."""
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = settings.STRIPE_API_VERSION
    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
    return True


def handle_stripe_errors(func):
    """Decorator to turn Stripe SDK errors into UpstreamUnavailable"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        configure_stripe()
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as e:
            log_error(f"Stripe call {func.__name__} failed", str(e))
            raise UpstreamUnavailable("Billing provider unavailable", str(e))

    return wrapper


@handle_stripe_errors
def get_subscription(subscription_id: str) -> SubscriptionPayload:
    subscription = stripe.Subscription.retrieve(subscription_id)
    return SubscriptionPayload.from_provider(subscription)


@handle_stripe_errors
def list_subscriptions(customer_id: str) -> List[SubscriptionPayload]:
    """
    Lists every subscription of a customer, in any status.

    Args:
        customer_id (str): Stripe customer id.

    Returns:
        list: SubscriptionPayload for each subscription Stripe returns.
    """
    page = stripe.Subscription.list(customer=customer_id, status="all", limit=100)
    return [SubscriptionPayload.from_provider(s) for s in page.auto_paging_iter()]


@handle_stripe_errors
def get_customer(customer_id: str) -> Optional[dict]:
    """
    Returns the customer's email and metadata, or None if it was deleted.
    """
    customer = stripe.Customer.retrieve(customer_id)
    try:
        if customer["deleted"]:
            return None
    except KeyError:
        pass
    try:
        metadata = {str(k): str(v) for k, v in customer["metadata"].items()}
    except (KeyError, TypeError, AttributeError):
        metadata = {}
    try:
        email = customer["email"]
    except KeyError:
        email = None
    return {"id": customer["id"], "email": email, "metadata": metadata}


@handle_stripe_errors
def create_portal_session(customer_id: str, return_url: str = None) -> str:
    session = stripe.billing_portal.Session.create(
        customer=customer_id,
        return_url=return_url or f"{settings.SITE_URL}/billing/portal-return",
    )
    log_info(f"Created billing portal session for {customer_id}")
    return session["url"]


@handle_stripe_errors
def create_checkout_session(account_id: str, price_id: str = None, customer_id: str = None,
                            email: str = None, success_url: str = None, cancel_url: str = None) -> str:
    """
    Starts a subscription Checkout session for an account.

    An existing customer is reused; otherwise the account email is pre-filled so
    Stripe creates the customer. The account id is written to both the session
    and the subscription metadata, which is how webhooks find the account later.

    Returns:
        str: The hosted Checkout URL.
    """
    metadata = {settings.ACCOUNT_METADATA_KEY: account_id}
    params = {
        "mode": "subscription",
        "line_items": [{"price": price_id or settings.STRIPE_PRICE_ID, "quantity": 1}],
        "success_url": success_url or f"{settings.SITE_URL}/billing/return?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": cancel_url or f"{settings.SITE_URL}/billing/return?payment=cancelled",
        "client_reference_id": account_id,
        "metadata": metadata,
        "subscription_data": {"metadata": metadata},
    }
    if customer_id:
        params["customer"] = customer_id
    elif email:
        params["customer_email"] = email

    session = stripe.checkout.Session.create(**params)
    log_info(f"Created checkout session for account {account_id}")
    return session["url"]


def construct_event(payload: bytes, signature: str):
    """
    Verifies a webhook signature and parses the event.

    Raises:
        InvalidBillingEvent: If the signature or payload is not valid.
    """
    configure_stripe()
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise InvalidBillingEvent("Webhook secret is not configured")
    try:
        return stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        raise InvalidBillingEvent("Invalid payload", str(e))
    except stripe.SignatureVerificationError as e:
        raise InvalidBillingEvent("Invalid signature", str(e))
