"""
Line Deallocator
================
Disconnects an account's phone line from the voice assistant, and optionally
hands the line back to the pool.

Deallocation removes the Vapi link only: the account keeps its number, it just
stops routing calls. If Vapi refuses, nothing local changes and the caller can
simply try again.
"""

from services import resource_store, vapi_client
from services.audit_log import log_event
from services.exceptions import DeprovisioningFailed, NoAssignedLine, UpstreamUnavailable
from utils.logger import log_info, log_success


def deallocate_line(account_id: str) -> dict:
    """
    Removes the external link of the line an account owns.

    Returns:
        dict: {"number": ..., "unlinked": bool}; unlinked is False if the line had no link.

    Raises:
        NoAssignedLine: The account owns no line.
        DeprovisioningFailed: Vapi did not remove the link; state is unchanged.
    """
    resource = resource_store.find_resource_for_account(account_id)
    if resource is None:
        raise NoAssignedLine()

    if not resource.external_link_id:
        log_info(f"{resource.external_number} for account {account_id} has no external link")
        return {"number": resource.external_number, "unlinked": False}

    try:
        vapi_client.unlink_number(resource.external_link_id)
    except UpstreamUnavailable as e:
        raise DeprovisioningFailed(details=e.details or e.message)

    resource_store.clear_external_link(resource.id)
    log_success(f"Disconnected {resource.external_number} for account {account_id}")
    log_event("NUMBER_UNLINKED", f"Unlinked {resource.external_number} from account {account_id}",
              f"Vapi ID: {resource.external_link_id}")
    return {"number": resource.external_number, "unlinked": True}


def release_line(account_id: str) -> dict:
    """
    Unlinks the account's line (if linked) and returns it to the pool.

    Raises:
        NoAssignedLine: The account owns no line.
        DeprovisioningFailed: Vapi did not remove the link; the account keeps the line.
    """
    result = deallocate_line(account_id)
    resource = resource_store.find_resource_for_account(account_id)
    if resource is None or not resource_store.release_ownership(resource.id, account_id):
        raise NoAssignedLine("The phone number changed while it was being released")

    log_success(f"Released {resource.external_number} back to the pool")
    log_event("NUMBER_RELEASED", f"Released {resource.external_number} from account {account_id}")
    return {"number": resource.external_number, "unlinked": result["unlinked"], "released": True}
