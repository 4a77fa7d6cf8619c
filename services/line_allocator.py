"""
Line Allocator
==============
Gives an account a phone line from the pool and connects it to the account's
voice assistant.

Flow:
    1. Claim the oldest free line with a conditional update (losers re-select).
    2. Link the number to the assistant through Vapi.
    3. Store the Vapi id on the line.
    4. If linking fails, put the line back in the pool before raising.

When the call returns, the line is either claimed and linked or back in the
pool. An account that already owns a line never claims a second one.
"""

from typing import Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from services import resource_store, subscription_store, vapi_client
from services.audit_log import log_event
from services.exceptions import NoAssignedLine, ProvisioningFailed, ResourceExhausted, UpstreamUnavailable
from utils.keyed_lock import KeyedLock
from utils.logger import log_error, log_info, log_success, log_warning

PROVISIONED = "Provisioned"
ROLLED_BACK = "RolledBack"
FAILED = "Failed"

_account_locks = KeyedLock()


class ClaimResult(BaseModel):
    account_id: str
    resource_id: str
    number: str
    link_id: Optional[str] = None
    state: str = PROVISIONED
    already_assigned: bool = False


def _routing_id_for(account_id: str, routing_id: str = None) -> str:
    if routing_id:
        return routing_id
    account = subscription_store.find_account(account_id)
    if account is None or not account.assistant_routing_id:
        raise ProvisioningFailed(
            "Set up your assistant before connecting a phone number",
            f"account {account_id} has no assistant",
        )
    return account.assistant_routing_id


def _claim_from_pool(account_id: str):
    lost = []
    for _ in range(max(1, settings.CLAIM_SELECTION_ATTEMPTS)):
        candidate = resource_store.find_claim_candidate(exclude_ids=lost)
        if candidate is None:
            break
        if resource_store.claim_resource(candidate.id, account_id):
            log_info(f"Claimed line {candidate.external_number} for account {account_id}")
            return candidate
        # Someone else took it between select and update
        lost.append(candidate.id)
        log_info(f"Line {candidate.external_number} was claimed concurrently, selecting again")

    log_error(f"No claimable line for account {account_id}", f"lost races: {len(lost)}")
    raise ResourceExhausted()


def _roll_back(resource, account_id: str, reason: str) -> str:
    try:
        if resource_store.revert_claim(resource.id, account_id):
            log_warning(f"Returned line {resource.external_number} to the pool", reason)
            log_event("NUMBER_CLAIM_ROLLED_BACK", f"Rolled back claim of {resource.external_number} by {account_id}", reason)
            return ROLLED_BACK
        failure = "line no longer owned by the account"
    except SQLAlchemyError as e:
        failure = str(e)
    log_error(f"Failed to roll back claim of {resource.external_number}", failure)
    log_event("NUMBER_CLAIM_ROLLBACK_FAILED", f"Line {resource.external_number} is still held by {account_id} without a link",
              f"{reason}; rollback: {failure}")
    return FAILED


def _link(resource, account_id: str, routing_id: str, compensate: bool) -> ClaimResult:
    try:
        link_id = vapi_client.link_number(resource.external_number, routing_id)
    except UpstreamUnavailable as e:
        state = _roll_back(resource, account_id, e.details or e.message) if compensate else FAILED
        raise ProvisioningFailed(details=e.details or e.message, state=state)

    try:
        stored = resource_store.mark_linked(resource.id, account_id, link_id)
        failure = None if stored else "line ownership changed during linking"
    except SQLAlchemyError as e:
        failure = str(e)

    if failure:
        log_error(f"Could not store Vapi id {link_id} for {resource.external_number}", failure)
        try:
            vapi_client.unlink_number(link_id)
        except UpstreamUnavailable as e:
            log_error(f"Orphaned Vapi number {link_id} needs manual cleanup", str(e))
        state = _roll_back(resource, account_id, failure) if compensate else FAILED
        raise ProvisioningFailed(details=failure, state=state)

    log_success(f"Connected {resource.external_number} for account {account_id}", f"Vapi ID: {link_id}")
    log_event("NUMBER_CLAIMED", f"Assigned {resource.external_number} to account {account_id}", f"Vapi ID: {link_id}")
    return ClaimResult(
        account_id=account_id,
        resource_id=resource.id,
        number=resource.external_number,
        link_id=link_id,
    )


def claim_line(account_id: str, routing_id: str = None) -> ClaimResult:
    """
    Claims and connects a line for an account.

    Calling it again for an account that already owns a line returns that line,
    re-linking it first if its Vapi link was removed.

    Args:
        account_id (str): The account asking for a number.
        routing_id (str, optional): Assistant to route to; defaults to the account's.

    Returns:
        ClaimResult: The connected line.

    Raises:
        ResourceExhausted: No line could be claimed.
        ProvisioningFailed: Linking failed; its state says whether the line went back to the pool.
    """
    with _account_locks.hold(account_id):
        existing = resource_store.find_resource_for_account(account_id)
        if existing is not None:
            if existing.external_link_id:
                log_info(f"Account {account_id} already has {existing.external_number}")
                return ClaimResult(
                    account_id=account_id,
                    resource_id=existing.id,
                    number=existing.external_number,
                    link_id=existing.external_link_id,
                    already_assigned=True,
                )
            return _link(existing, account_id, _routing_id_for(account_id, routing_id), compensate=False)

        routing_id = _routing_id_for(account_id, routing_id)
        resource = _claim_from_pool(account_id)
        return _link(resource, account_id, routing_id, compensate=True)


def relink_line(account_id: str, routing_id: str = None) -> ClaimResult:
    """
    Reconnects the line an account already owns without touching the pool.

    Raises:
        NoAssignedLine: The account owns no line.
        ProvisioningFailed: Linking failed; ownership is kept.
    """
    with _account_locks.hold(account_id):
        resource = resource_store.find_resource_for_account(account_id)
        if resource is None:
            raise NoAssignedLine()
        if resource.external_link_id:
            log_info(f"{resource.external_number} is already connected for account {account_id}")
            return ClaimResult(
                account_id=account_id,
                resource_id=resource.id,
                number=resource.external_number,
                link_id=resource.external_link_id,
                already_assigned=True,
            )
        return _link(resource, account_id, _routing_id_for(account_id, routing_id), compensate=False)
