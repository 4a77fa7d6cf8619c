"""
Billing Router
==============
Stripe webhook intake, subscription reconciliation and the billing actions the
dashboard calls.

Endpoints:
- POST /billing/webhook: Verified Stripe events -> local subscription mirror.
- POST /billing/sync: Reconciles one account (account_id) or every account (sync_all).
- GET /billing/status/{account_id}: The account's latest subscription.
- GET /billing/reactivation/{account_id}: Portal or checkout for a returning customer.
- POST /billing/portal: Billing portal URL for an existing customer.
- POST /billing/checkout: Checkout URL for a new subscription.
- GET /billing/return, GET /billing/portal-return: Redirects back to the dashboard.

Stripe calls, grace waits, retries and sweeps run in worker threads
(asyncio.to_thread) so one slow webhook never holds up other requests.
"""

import asyncio

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from services import event_ingestor, reactivation, reconciliation, stripe_billing, subscription_store
from services.exceptions import AccountNotFound, InvalidBillingEvent, LineServiceError
from utils.logger import log_info, log_error
from utils.request_parser import as_bool, first_value, parse_incoming_payload, require_account_id

router = APIRouter(prefix="/billing", tags=["billing"])


def _http_error(e: LineServiceError) -> HTTPException:
    log_error(e.message, e.details)
    return HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/webhook")
async def stripe_webhook(request: Request):
    """
    Receives Stripe webhook events.

    Returns 400 for a bad signature or payload, and 500 when processing still
    fails after retries so Stripe delivers the event again.
    """
    # ---------------------------------------------------------
    # 1. Verify Signature
    # ---------------------------------------------------------
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    try:
        event = await asyncio.to_thread(stripe_billing.construct_event, payload, signature)
    except InvalidBillingEvent as e:
        raise _http_error(e)

    # ---------------------------------------------------------
    # 2. Ingest
    # ---------------------------------------------------------
    try:
        result = await asyncio.to_thread(event_ingestor.ingest_event, event)
    except InvalidBillingEvent as e:
        raise _http_error(e)
    except (LineServiceError, SQLAlchemyError) as e:
        log_error("Webhook processing failed, asking Stripe to redeliver", str(e))
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"received": True, "outcome": result.outcome, "event_type": result.event_type}


@router.post("/sync")
async def sync_subscriptions(request: Request):
    payload = await parse_incoming_payload(request)
    force = as_bool(first_value(payload, ["force", "force_sync", "forceSync"]))

    if as_bool(first_value(payload, ["sync_all", "syncAll"])):
        summary = await asyncio.to_thread(reconciliation.sync_all, force=force)
        return {"success": True, "sync_type": "bulk", **summary.model_dump()}

    account_id = require_account_id(payload)
    try:
        result = await asyncio.to_thread(reconciliation.sync_account, account_id, force=force)
    except LineServiceError as e:
        raise _http_error(e)
    return {"success": True, "sync_type": "single", **result.model_dump()}


def _load_snapshots(account_id: str):
    if subscription_store.find_account(account_id) is None:
        raise AccountNotFound()
    return subscription_store.list_for_account(account_id)


@router.get("/status/{account_id}")
async def subscription_status(account_id: str):
    try:
        snapshots = await asyncio.to_thread(_load_snapshots, account_id)
    except LineServiceError as e:
        raise _http_error(e)
    latest = snapshots[0] if snapshots else None
    return {
        "account_id": account_id,
        "subscription": latest.model_dump(mode="json") if latest else None,
        "has_active_subscription": any(s.is_active for s in snapshots),
        "has_subscription_history": len(snapshots) > 0,
    }


@router.get("/reactivation/{account_id}")
async def reactivation_advice(account_id: str):
    advice = await asyncio.to_thread(reactivation.advise_reactivation, account_id)
    return advice.model_dump()


@router.post("/portal")
async def billing_portal(request: Request):
    payload = await parse_incoming_payload(request)
    account_id = require_account_id(payload)

    account = await asyncio.to_thread(subscription_store.find_account, account_id)
    if account is None or not account.external_customer_id:
        raise _http_error(AccountNotFound("No billing customer on file for this account"))

    try:
        url = await asyncio.to_thread(stripe_billing.create_portal_session, account.external_customer_id)
    except LineServiceError as e:
        raise _http_error(e)
    return {"url": url}


@router.post("/checkout")
async def billing_checkout(request: Request):
    payload = await parse_incoming_payload(request)
    account_id = require_account_id(payload)

    account = await asyncio.to_thread(subscription_store.find_account, account_id)
    if account is None:
        raise _http_error(AccountNotFound())

    price_id = first_value(payload, ["price_id", "priceId", "plan_id", "planId"])
    if not (price_id or settings.STRIPE_PRICE_ID):
        raise HTTPException(status_code=422, detail="price_id is required")

    try:
        url = await asyncio.to_thread(
            stripe_billing.create_checkout_session,
            account_id,
            price_id=price_id,
            customer_id=account.external_customer_id,
            email=account.email,
        )
    except LineServiceError as e:
        raise _http_error(e)
    return {"url": url}


@router.get("/return")
async def checkout_return(payment: str = "success"):
    outcome = "success" if payment == "success" else "cancelled"
    log_info(f"Checkout returned with payment={outcome}")
    return RedirectResponse(f"{settings.SITE_URL}/dashboard/billing?payment={outcome}", status_code=302)


@router.get("/portal-return")
async def portal_return():
    return RedirectResponse(f"{settings.SITE_URL}/dashboard/billing", status_code=302)
