"""
Resource Store
==============
Data access for the phone line pool (`telephony_resources`).

The claim is a single conditional UPDATE that re-checks the owner column, so
two callers racing for the same row cannot both win: the database reports one
affected row to exactly one of them.
"""

from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from services.database import TelephonyResource, session_scope, utcnow


def find_resource_for_account(account_id: str) -> Optional[TelephonyResource]:
    with session_scope() as session:
        stmt = (
            select(TelephonyResource)
            .where(TelephonyResource.owner_account_id == account_id)
            .order_by(TelephonyResource.claimed_at.desc())
            .limit(1)
        )
        return session.scalars(stmt).first()


def find_resource_by_number(number: str) -> Optional[TelephonyResource]:
    with session_scope() as session:
        stmt = select(TelephonyResource).where(TelephonyResource.external_number == number)
        return session.scalars(stmt).first()


def find_claim_candidate(exclude_ids: Iterable[str] = ()) -> Optional[TelephonyResource]:
    """
    Returns the oldest unowned, claimable line.

    Args:
        exclude_ids (Iterable[str]): Rows this caller already lost a race for.
    """
    with session_scope() as session:
        stmt = (
            select(TelephonyResource)
            .where(
                TelephonyResource.owner_account_id.is_(None),
                TelephonyResource.is_available_for_claim.is_(True),
            )
            .order_by(TelephonyResource.created_at.asc(), TelephonyResource.id.asc())
            .limit(1)
        )
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            stmt = stmt.where(TelephonyResource.id.not_in(exclude_ids))
        return session.scalars(stmt).first()


def claim_resource(resource_id: str, account_id: str) -> bool:
    """
    Claims a line for an account if it is still unowned.

    Returns:
        bool: True only for the caller whose update actually changed the row.
    """
    with session_scope() as session:
        result = session.execute(
            update(TelephonyResource)
            .where(
                TelephonyResource.id == resource_id,
                TelephonyResource.owner_account_id.is_(None),
                TelephonyResource.is_available_for_claim.is_(True),
            )
            .values(
                owner_account_id=account_id,
                claimed_at=utcnow(),
                is_available_for_claim=False,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def mark_linked(resource_id: str, account_id: str, link_id: str) -> bool:
    """Records the external link id on a line the account still owns."""
    with session_scope() as session:
        result = session.execute(
            update(TelephonyResource)
            .where(
                TelephonyResource.id == resource_id,
                TelephonyResource.owner_account_id == account_id,
            )
            .values(external_link_id=link_id, external_linked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def revert_claim(resource_id: str, account_id: str) -> bool:
    """Puts a claimed line back in the pool exactly as it was before the claim."""
    with session_scope() as session:
        result = session.execute(
            update(TelephonyResource)
            .where(
                TelephonyResource.id == resource_id,
                TelephonyResource.owner_account_id == account_id,
            )
            .values(
                owner_account_id=None,
                claimed_at=None,
                is_available_for_claim=True,
                external_link_id=None,
                external_linked_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def clear_external_link(resource_id: str) -> bool:
    """Drops the external link while keeping the owner."""
    with session_scope() as session:
        result = session.execute(
            update(TelephonyResource)
            .where(TelephonyResource.id == resource_id)
            .values(external_link_id=None, external_linked_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def release_ownership(resource_id: str, account_id: str) -> bool:
    """
    Returns an unlinked line to the pool.

    A line that still has an external link is left alone, so a line is never
    routed without an owner.
    """
    with session_scope() as session:
        result = session.execute(
            update(TelephonyResource)
            .where(
                TelephonyResource.id == resource_id,
                TelephonyResource.owner_account_id == account_id,
                TelephonyResource.external_link_id.is_(None),
            )
            .values(owner_account_id=None, claimed_at=None, is_available_for_claim=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def add_resource(number: str, provider_sid: str = None):
    """
    Adds a number to the pool unless it is already there.

    Returns:
        tuple: (TelephonyResource, was_created bool)
    """
    existing = find_resource_by_number(number)
    if existing:
        return existing, False
    try:
        with session_scope() as session:
            resource = TelephonyResource(external_number=number, provider_sid=provider_sid)
            session.add(resource)
    except IntegrityError:
        # Another import added the same number first
        return find_resource_by_number(number), False
    return resource, True


def count_available() -> int:
    with session_scope() as session:
        stmt = select(func.count()).select_from(TelephonyResource).where(
            TelephonyResource.owner_account_id.is_(None),
            TelephonyResource.is_available_for_claim.is_(True),
        )
        return session.scalar(stmt)


def pool_stats() -> dict:
    with session_scope() as session:
        total = session.scalar(select(func.count()).select_from(TelephonyResource))
        claimed = session.scalar(
            select(func.count()).select_from(TelephonyResource)
            .where(TelephonyResource.owner_account_id.is_not(None))
        )
        linked = session.scalar(
            select(func.count()).select_from(TelephonyResource)
            .where(TelephonyResource.external_link_id.is_not(None))
        )
    return {
        "total": total,
        "available": count_available(),
        "claimed": claimed,
        "linked": linked,
    }
