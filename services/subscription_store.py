"""
Subscription Store
==================
Data access for the local subscription mirror and the account fields billing
maintains.

Upserts are keyed on the provider's subscription id. Writes for one id are
serialized in-process by a keyed lock; across processes the unique constraint
on `external_subscription_id` turns a lost insert race into an update.
"""

from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from services.billing_models import SubscriptionSnapshot
from services.database import Account, SubscriptionRecord, session_scope, utcnow
from utils.keyed_lock import KeyedLock
from utils.logger import log_info, log_warning

_upsert_locks = KeyedLock()

# ---------------------------------------------------------
# Accounts
# ---------------------------------------------------------

def find_account(account_id: str) -> Optional[Account]:
    if not account_id:
        return None
    with session_scope() as session:
        return session.get(Account, account_id)


def find_account_by_customer_id(customer_id: str) -> Optional[Account]:
    if not customer_id:
        return None
    with session_scope() as session:
        stmt = select(Account).where(Account.external_customer_id == customer_id).limit(1)
        account = session.scalars(stmt).first()
        if account:
            return account
        # Accounts whose customer id only lives on a past subscription row
        stmt = (
            select(SubscriptionRecord.account_id)
            .where(SubscriptionRecord.external_customer_id == customer_id)
            .limit(1)
        )
        account_id = session.scalars(stmt).first()
        return session.get(Account, account_id) if account_id else None


def find_account_by_email(email: str) -> Optional[Account]:
    if not email:
        return None
    with session_scope() as session:
        stmt = select(Account).where(func.lower(Account.email) == email.strip().lower()).limit(1)
        return session.scalars(stmt).first()


def save_account(account_id: str, email: str = None, external_customer_id: str = None,
                 assistant_routing_id: str = None) -> Account:
    """Creates the account row, or fills in the given fields on an existing one."""
    with session_scope() as session:
        account = session.get(Account, account_id)
        if account is None:
            account = Account(id=account_id, subscription_status="inactive")
            session.add(account)
        if email is not None:
            account.email = email
        if external_customer_id is not None:
            account.external_customer_id = external_customer_id
        if assistant_routing_id is not None:
            account.assistant_routing_id = assistant_routing_id
    return account


def set_account_customer_id(account_id: str, customer_id: str) -> bool:
    with session_scope() as session:
        account = session.get(Account, account_id)
        if account is None:
            return False
        account.external_customer_id = customer_id
    log_info(f"Recorded billing customer {customer_id} on account {account_id}")
    return True


def set_account_subscription_status(account_id: str, status: str) -> bool:
    """
    Updates the denormalized `subscription_status` ('active' or 'inactive').

    Returns:
        bool: False if the account does not exist locally.
    """
    with session_scope() as session:
        account = session.get(Account, account_id)
        if account is None:
            log_warning(f"Cannot update subscription status, account {account_id} not found")
            return False
        account.subscription_status = status
    return True


def list_sweepable_accounts() -> List[Account]:
    """Accounts the reconciliation sweep can query the provider for."""
    with session_scope() as session:
        stmt = (
            select(Account)
            .where(Account.external_customer_id.is_not(None), Account.external_customer_id != "")
            .order_by(Account.id)
        )
        return list(session.scalars(stmt).all())

# ---------------------------------------------------------
# Subscription snapshots
# ---------------------------------------------------------

def find_by_subscription_id(subscription_id: str) -> Optional[SubscriptionSnapshot]:
    with session_scope() as session:
        record = _get_record(session, subscription_id)
        return SubscriptionSnapshot.from_record(record) if record else None


def latest_for_account(account_id: str) -> Optional[SubscriptionSnapshot]:
    with session_scope() as session:
        stmt = (
            select(SubscriptionRecord)
            .where(SubscriptionRecord.account_id == account_id)
            .order_by(SubscriptionRecord.created_at.desc(), SubscriptionRecord.id.desc())
            .limit(1)
        )
        record = session.scalars(stmt).first()
        return SubscriptionSnapshot.from_record(record) if record else None


def list_for_account(account_id: str) -> List[SubscriptionSnapshot]:
    with session_scope() as session:
        stmt = (
            select(SubscriptionRecord)
            .where(SubscriptionRecord.account_id == account_id)
            .order_by(SubscriptionRecord.created_at.desc(), SubscriptionRecord.id.desc())
        )
        return [SubscriptionSnapshot.from_record(r) for r in session.scalars(stmt).all()]


def has_active_subscription(account_id: str) -> bool:
    return any(s.is_active for s in list_for_account(account_id))


def count_for_subscription(subscription_id: str) -> int:
    with session_scope() as session:
        stmt = select(func.count()).select_from(SubscriptionRecord).where(
            SubscriptionRecord.external_subscription_id == subscription_id
        )
        return session.scalar(stmt)


def upsert_snapshot(snapshot: SubscriptionSnapshot, force: bool = False) -> str:
    """
    Writes a snapshot keyed by its external subscription id.

    Args:
        snapshot (SubscriptionSnapshot): The state to persist.
        force (bool): Rewrite the row even when nothing changed.

    Returns:
        str: 'created', 'updated' or 'unchanged'.
    """
    with _upsert_locks.hold(snapshot.external_subscription_id):
        try:
            return _write_snapshot(snapshot, force)
        except IntegrityError:
            log_warning(
                f"Subscription {snapshot.external_subscription_id} was inserted concurrently",
                "retrying as update",
            )
            return _write_snapshot(snapshot, force)


def _get_record(session, subscription_id: str) -> Optional[SubscriptionRecord]:
    stmt = select(SubscriptionRecord).where(
        SubscriptionRecord.external_subscription_id == subscription_id
    )
    return session.scalars(stmt).first()


def _write_snapshot(snapshot: SubscriptionSnapshot, force: bool) -> str:
    values = snapshot.model_dump()
    with session_scope() as session:
        record = _get_record(session, snapshot.external_subscription_id)
        if record is None:
            session.add(SubscriptionRecord(**values))
            outcome = "created"
        elif not force and SubscriptionSnapshot.from_record(record).model_dump() == values:
            return "unchanged"
        else:
            for key, value in values.items():
                setattr(record, key, value)
            record.updated_at = utcnow()
            outcome = "updated"
    return outcome
