"""
Event Ingestor
==============
Applies one Stripe webhook event to the local subscription mirror.

Key Functionality:
- Parses the event into a subscription or invoice event (others are ignored).
- Finds the owning account: existing snapshot, then metadata, then the
  customer id on file, then the customer's email.
- Re-fetches an active subscription once when Stripe has not filled in its
  billing period yet, and keeps re-fetching a bounded number of times while a
  fresh checkout is still "incomplete".
- Upserts the snapshot and recomputes the account's subscription status from
  all of its subscriptions.

Delivery is at-least-once, so ingesting the same event twice leaves the same
state behind. Provider and store failures are retried a bounded number of times
and then raised for redelivery.
"""

import time
from typing import Optional

from pydantic import BaseModel

from config import settings
from services import stripe_billing, subscription_store
from services.audit_log import log_event
from services.billing_models import (
    IgnoredEvent,
    InvoiceEvent,
    SubscriptionPayload,
    parse_event,
)
from services.exceptions import EventUnattributable, TransientProviderLag, UpstreamUnavailable
from utils.logger import log_info, log_success, log_warning
from utils.retry import retry_call, retry_delay

INCOMPLETE = "incomplete"


class IngestResult(BaseModel):
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    outcome: str
    account_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[str] = None


def ingest_event(event) -> IngestResult:
    """
    Processes one verified webhook event.

    Args:
        event: The Stripe event (object or dict).

    Returns:
        IngestResult: outcome is 'created', 'updated', 'unchanged', 'ignored'
            or 'unattributable'.

    Raises:
        InvalidBillingEvent: The envelope could not be parsed.
        UpstreamUnavailable / SQLAlchemyError: Still failing after the bounded retries.
    """
    parsed = parse_event(event)

    if isinstance(parsed, IgnoredEvent):
        log_info(f"Ignoring billing event {parsed.event_type}", parsed.event_id or "")
        return IngestResult(event_id=parsed.event_id, event_type=parsed.event_type, outcome="ignored")

    if isinstance(parsed, InvoiceEvent):
        if not parsed.subscription_id:
            log_info(f"Invoice {parsed.invoice_id} is not tied to a subscription, ignoring")
            return IngestResult(event_id=parsed.event_id, event_type=parsed.event_type, outcome="ignored")
        payload = retry_call(
            lambda: stripe_billing.get_subscription(parsed.subscription_id),
            f"Fetching subscription {parsed.subscription_id}",
        )
    else:
        payload = parsed.subscription

    return ingest_subscription(payload, event_id=parsed.event_id, event_type=parsed.event_type)


def ingest_subscription(payload: SubscriptionPayload, event_id: str = None, event_type: str = None) -> IngestResult:
    """Resolves, fills in and upserts one subscription payload."""
    if _needs_grace(payload):
        payload = _refetch_after_grace(payload)
    if payload.status == INCOMPLETE:
        payload = _wait_while_incomplete(payload)

    try:
        return retry_call(
            lambda: _apply(payload, event_id, event_type),
            f"Ingesting subscription {payload.id}",
        )
    except EventUnattributable as e:
        log_warning(f"Dropping billing event for subscription {payload.id}", e.message)
        log_event("EVENT_UNATTRIBUTABLE", f"No account for subscription {payload.id}",
                  f"customer: {payload.customer_id}, event: {event_type} {event_id or ''}")
        return IngestResult(
            event_id=event_id,
            event_type=event_type,
            outcome="unattributable",
            subscription_id=payload.id,
            status=payload.status,
        )


def check_period_bounds(payload: SubscriptionPayload):
    """
    Raises:
        TransientProviderLag: An active or trialing subscription has no billing period yet.
    """
    if payload.is_active and payload.missing_period_bounds:
        raise TransientProviderLag(details=payload.id)


def _needs_grace(payload: SubscriptionPayload) -> bool:
    # A checkout that just completed is often still "incomplete" for a moment
    if payload.status == INCOMPLETE:
        return True
    try:
        check_period_bounds(payload)
    except TransientProviderLag:
        return True
    return False


def _refetch_after_grace(payload: SubscriptionPayload) -> SubscriptionPayload:
    log_info(
        f"Subscription {payload.id} is {payload.status} and not settled yet",
        f"re-fetching in {settings.GRACE_PERIOD_SECONDS}s",
    )
    time.sleep(settings.GRACE_PERIOD_SECONDS)
    try:
        refreshed = stripe_billing.get_subscription(payload.id)
    except UpstreamUnavailable as e:
        log_warning(f"Could not re-fetch subscription {payload.id}, using event data", e.details or e.message)
        return payload
    if refreshed.missing_period_bounds and refreshed.is_active:
        log_warning(f"Subscription {payload.id} still has no billing period after re-fetch")
    return refreshed


def _wait_while_incomplete(payload: SubscriptionPayload) -> SubscriptionPayload:
    """
    Re-fetches an incomplete subscription until it moves on or the attempts run out.

    The grace re-fetch counts as the first attempt; the rest wait 2s, 4s, ...
    like any other retry. Whatever Stripe last reported is what gets stored.
    """
    attempts = max(1, settings.INGEST_MAX_ATTEMPTS)
    for attempt in range(1, attempts):
        delay = retry_delay(attempt)
        log_info(f"Subscription {payload.id} still incomplete, re-fetching in {delay:.0f}s",
                 f"attempt {attempt + 1}/{attempts}")
        time.sleep(delay)
        try:
            payload = stripe_billing.get_subscription(payload.id)
        except UpstreamUnavailable as e:
            log_warning(f"Could not re-fetch subscription {payload.id}, storing it as incomplete", e.details or e.message)
            return payload
        if payload.status != INCOMPLETE:
            return payload

    log_warning(f"Subscription {payload.id} still incomplete after {attempts} attempts")
    return payload


def resolve_account_id(payload: SubscriptionPayload) -> str:
    """
    Finds the account a subscription belongs to.

    Order: an existing snapshot for the subscription, the account id in the
    subscription metadata, the account holding the customer id, the account id
    in the customer metadata, and finally the customer's email.

    Raises:
        EventUnattributable: No account matched.
    """
    existing = subscription_store.find_by_subscription_id(payload.id)
    if existing:
        return existing.account_id

    key = settings.ACCOUNT_METADATA_KEY
    account = subscription_store.find_account(payload.metadata.get(key))
    if account:
        return _remember_customer(account, payload.customer_id)

    account = subscription_store.find_account_by_customer_id(payload.customer_id)
    if account:
        return account.id

    if payload.customer_id:
        customer = stripe_billing.get_customer(payload.customer_id)
        if customer:
            account = subscription_store.find_account(customer["metadata"].get(key))
            if account is None:
                account = subscription_store.find_account_by_email(customer["email"])
            if account:
                return _remember_customer(account, payload.customer_id)

    raise EventUnattributable(details=f"subscription {payload.id}, customer {payload.customer_id}")


def _remember_customer(account, customer_id: Optional[str]) -> str:
    if customer_id and not account.external_customer_id:
        subscription_store.set_account_customer_id(account.id, customer_id)
    return account.id


def _apply(payload: SubscriptionPayload, event_id: str, event_type: str) -> IngestResult:
    account_id = resolve_account_id(payload)
    snapshot = payload.to_snapshot(account_id)
    outcome = subscription_store.upsert_snapshot(snapshot)

    # Any active subscription keeps the account active, including one
    # whose cancellation is scheduled for the period end
    account_status = "active" if subscription_store.has_active_subscription(account_id) else "inactive"
    subscription_store.set_account_subscription_status(account_id, account_status)

    if outcome == "unchanged":
        log_info(f"Subscription {payload.id} already up to date", f"event {event_id or ''}")
    else:
        log_success(f"Subscription {payload.id} {outcome} for account {account_id}", f"status: {snapshot.status}")
        log_event("SUBSCRIPTION_SYNCED", f"Subscription {payload.id} {outcome} for account {account_id}",
                  f"status: {snapshot.status}, event: {event_type} {event_id or ''}")

    return IngestResult(
        event_id=event_id,
        event_type=event_type,
        outcome=outcome,
        account_id=account_id,
        subscription_id=payload.id,
        status=snapshot.status,
    )
