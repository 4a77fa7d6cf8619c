"""
Reconciliation Sweep
====================
Re-derives local subscription state from Stripe instead of waiting for
webhooks.

For each account with a Stripe customer id, every subscription Stripe lists is
upserted with the same logic as webhook ingestion (without the grace wait,
since this read is already authoritative). Local snapshots Stripe no longer
returns are left alone.

In a full sweep accounts are processed independently on a bounded thread pool:
a failure for one account is recorded in the summary and the sweep moves on.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from services import stripe_billing, subscription_store
from services.audit_log import log_event
from services.exceptions import AccountNotFound, LineServiceError, UpstreamUnavailable
from utils.logger import log_error, log_info, log_success, log_warning


class AccountSyncResult(BaseModel):
    account_id: str
    customer_id: Optional[str] = None
    synced: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: List[str] = Field(default_factory=list)
    active_subscription: Optional[dict] = None
    has_active_subscription: bool = False
    has_subscription_history: bool = False
    subscription_status: str = "inactive"


class SweepSummary(BaseModel):
    total_accounts: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    synced: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: List[str] = Field(default_factory=list)
    results: List[AccountSyncResult] = Field(default_factory=list)


def sync_account(account_id: str, force: bool = False) -> AccountSyncResult:
    """
    Pulls every Stripe subscription of one account into the local mirror.

    Args:
        account_id (str): The account to reconcile.
        force (bool): Rewrite snapshots even when nothing changed.

    Raises:
        AccountNotFound: Unknown account, or no Stripe customer on file.
        UpstreamUnavailable: Stripe could not list the subscriptions.
    """
    account = subscription_store.find_account(account_id)
    if account is None:
        raise AccountNotFound()
    if not account.external_customer_id:
        raise AccountNotFound("No billing customer on file for this account")
    return _sync(account, force)


def _fill_missing_period(payload):
    if not (payload.is_active and payload.missing_period_bounds):
        return payload
    log_info(f"Period dates missing for {payload.status} subscription {payload.id}, re-fetching")
    try:
        return stripe_billing.get_subscription(payload.id)
    except UpstreamUnavailable as e:
        log_warning(f"Could not re-fetch subscription {payload.id}", e.details or e.message)
        return payload


def _sync(account, force: bool) -> AccountSyncResult:
    result = AccountSyncResult(account_id=account.id, customer_id=account.external_customer_id)
    log_info(f"Reconciling account {account.id}", f"customer: {account.external_customer_id}")

    subscriptions = stripe_billing.list_subscriptions(account.external_customer_id)
    result.has_subscription_history = len(subscriptions) > 0

    for payload in subscriptions:
        try:
            payload = _fill_missing_period(payload)
            snapshot = payload.to_snapshot(account.id)
            outcome = subscription_store.upsert_snapshot(snapshot, force=force)
        except (LineServiceError, SQLAlchemyError) as e:
            log_error(f"Failed to sync subscription {payload.id}", str(e))
            result.errors.append(f"Subscription {payload.id}: {e}")
            continue

        setattr(result, outcome, getattr(result, outcome) + 1)
        result.synced += 1
        if snapshot.is_active:
            result.active_subscription = {
                "id": snapshot.external_subscription_id,
                "status": snapshot.status,
                "current_period_end": snapshot.current_period_end.isoformat() if snapshot.current_period_end else None,
            }

    result.has_active_subscription = result.active_subscription is not None
    result.subscription_status = "active" if result.has_active_subscription else "inactive"
    try:
        subscription_store.set_account_subscription_status(account.id, result.subscription_status)
    except SQLAlchemyError as e:
        result.errors.append(f"Failed to update account status: {e}")

    log_info(
        f"Reconciled account {account.id}",
        f"{result.created} created, {result.updated} updated, {result.unchanged} unchanged, {len(result.errors)} errors",
    )
    return result


def _sync_isolated(account, force: bool) -> AccountSyncResult:
    try:
        return _sync(account, force)
    except Exception as e:
        log_error(f"Reconciliation failed for account {account.id}", str(e))
        return AccountSyncResult(
            account_id=account.id,
            customer_id=account.external_customer_id,
            errors=[str(e) or e.__class__.__name__],
        )


def sync_all(max_workers: int = None, force: bool = False) -> SweepSummary:
    """
    Reconciles every account that has a Stripe customer id.

    Never raises for a single account's failure; the error is recorded in the
    summary instead.

    Returns:
        SweepSummary: Totals plus the per-account results in account order.
    """
    accounts = subscription_store.list_sweepable_accounts()
    summary = SweepSummary(total_accounts=len(accounts))
    log_info(f"Starting reconciliation sweep for {len(accounts)} account(s)")
    if not accounts:
        return summary

    workers = max(1, min(max_workers or settings.SWEEP_MAX_WORKERS, len(accounts)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sweep") as pool:
        results = list(pool.map(lambda account: _sync_isolated(account, force), accounts))

    for result in results:
        summary.processed += 1
        summary.results.append(result)
        summary.synced += result.synced
        summary.created += result.created
        summary.updated += result.updated
        summary.unchanged += result.unchanged
        if result.errors:
            summary.failed += 1
            summary.errors.extend(f"Account {result.account_id}: {error}" for error in result.errors)
        else:
            summary.successful += 1

    message = (
        f"Sweep completed: {summary.processed}/{summary.total_accounts} accounts, "
        f"{summary.created} created, {summary.updated} updated, {len(summary.errors)} errors"
    )
    if summary.failed:
        log_warning(message)
    else:
        log_success(message)
    log_event("SWEEP_COMPLETED", message, "; ".join(summary.errors)[:5000])
    return summary
