"""
Reactivation Advisor
====================
Decides whether a returning customer can manage their existing subscription in
the billing portal or has to go through Checkout for a new one.

`classify` is pure: it only looks at the snapshot it is given. When in doubt it
answers checkout, so ambiguous state never grants portal access.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from services import stripe_billing, subscription_store
from services.billing_models import TERMINAL_STATUSES, SubscriptionSnapshot
from services.database import as_utc
from services.exceptions import UpstreamUnavailable
from utils.logger import log_info, log_warning

PORTAL = "portal"
CHECKOUT = "checkout"


class ReactivationAdvice(BaseModel):
    action: str
    reason: str
    can_reactivate: bool = False
    provider_status: Optional[str] = None
    local_status: Optional[str] = None


def _advice(action: str, reason: str, snapshot: SubscriptionSnapshot = None) -> ReactivationAdvice:
    return ReactivationAdvice(
        action=action,
        reason=reason,
        can_reactivate=action == PORTAL,
        provider_status=snapshot.status if snapshot else None,
    )


def classify(snapshot: Optional[SubscriptionSnapshot], now: datetime = None) -> ReactivationAdvice:
    """
    Maps one subscription snapshot to portal or checkout.

    Rules, first match wins:
        1. no snapshot -> checkout
        2. active, not cancelling -> portal
        3. active, cancelling, still inside the paid period -> portal
        4. active/trialing with a cancellation at most REACTIVATION_GRACE_DAYS old -> portal
           (older cancellation -> checkout)
        5. canceled or incomplete_expired -> checkout
        6. cancelling and past the paid period -> checkout
        7. anything else -> checkout
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    if snapshot is None:
        return _advice(CHECKOUT, "No existing subscription found")

    status = snapshot.status
    period_end = snapshot.current_period_end

    if status == "active" and not snapshot.cancel_at_period_end:
        return _advice(PORTAL, "Active subscription - can manage via portal", snapshot)

    if status == "active" and snapshot.cancel_at_period_end and period_end and now <= period_end:
        return _advice(PORTAL, "Cancelled but still within billing period - can reactivate via portal", snapshot)

    if status in ("active", "trialing") and snapshot.canceled_at:
        grace = timedelta(days=settings.REACTIVATION_GRACE_DAYS)
        if now - snapshot.canceled_at <= grace:
            return _advice(PORTAL, f"Recently cancelled (within {settings.REACTIVATION_GRACE_DAYS} days) - can reactivate via portal", snapshot)
        return _advice(CHECKOUT, f"Cancelled more than {settings.REACTIVATION_GRACE_DAYS} days ago - create new subscription", snapshot)

    if status in TERMINAL_STATUSES:
        return _advice(CHECKOUT, "Subscription fully cancelled/expired - create new subscription", snapshot)

    if snapshot.cancel_at_period_end and period_end and now > period_end:
        return _advice(CHECKOUT, "Subscription expired past billing period - create new subscription", snapshot)

    return _advice(CHECKOUT, f"Subscription status '{status}' requires new subscription", snapshot)


def advise_reactivation(account_id: str, now: datetime = None) -> ReactivationAdvice:
    """
    Classifies an account's most recent subscription using Stripe's live state.

    Any failure while reading that state answers checkout.
    """
    try:
        local = subscription_store.latest_for_account(account_id)
        if local is None:
            return classify(None, now)
        live = stripe_billing.get_subscription(local.external_subscription_id).to_snapshot(account_id)
    except (UpstreamUnavailable, SQLAlchemyError) as e:
        log_warning(f"Reactivation check failed for account {account_id}, defaulting to checkout", str(e))
        return ReactivationAdvice(
            action=CHECKOUT,
            reason="Error checking subscription status - defaulting to new subscription",
        )

    advice = classify(live, now)
    advice.local_status = local.status
    log_info(f"Reactivation advice for account {account_id}: {advice.action}", advice.reason)
    return advice
