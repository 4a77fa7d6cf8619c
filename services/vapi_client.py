"""
Vapi Client
===========
Links pool numbers to the voice assistant platform so incoming calls reach an
account's assistant, and removes those links again.

Every call carries an explicit timeout. Nothing here retries; the allocator and
deallocator decide what a failure means.
"""

import requests

from config import settings
from services.exceptions import UpstreamUnavailable
from utils.logger import log_info, log_error


def _headers():
    return {
        "Authorization": f"Bearer {settings.VAPI_API_KEY}",
        "Content-Type": "application/json",
    }


def _url(path: str) -> str:
    return f"{settings.VAPI_API_BASE.rstrip('/')}{path}"


def link_number(number: str, routing_id: str) -> str:
    """
    Imports a Twilio number into Vapi and points it at an assistant.

    Args:
        number (str): E.164 phone number from the pool.
        routing_id (str): The assistant id calls should be routed to.

    Returns:
        str: The Vapi phone-number id (the external link id).

    Raises:
        UpstreamUnavailable: On timeout, connection failure or a non-2xx answer.
    """
    body = {
        "provider": "twilio",
        "number": number,
        "twilioAccountSid": settings.TWILIO_ACCOUNT_SID,
        "twilioAuthToken": settings.TWILIO_AUTH_TOKEN,
        "assistantId": routing_id,
    }
    if settings.VAPI_SERVER_URL:
        body["server"] = {"url": settings.VAPI_SERVER_URL}
        if settings.VAPI_SERVER_SECRET:
            body["server"]["headers"] = {"Authorization": f"Bearer {settings.VAPI_SERVER_SECRET}"}

    try:
        response = requests.post(
            _url("/phone-number"),
            json=body,
            headers=_headers(),
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        log_error(f"Vapi import request failed for {number}", str(e))
        raise UpstreamUnavailable("Voice provider unreachable", str(e))

    if not response.ok:
        log_error(f"Vapi rejected number {number}", f"{response.status_code}: {response.text[:300]}")
        raise UpstreamUnavailable(
            "Voice provider rejected the number",
            f"HTTP {response.status_code}",
        )

    link_id = (response.json() or {}).get("id")
    if not link_id:
        raise UpstreamUnavailable("Voice provider returned no phone number id")

    log_info(f"Linked {number} to assistant {routing_id}", f"Vapi ID: {link_id}")
    return link_id


def unlink_number(link_id: str):
    """
    Deletes a phone number from Vapi.

    A 404 means the number is already gone, which is the state we want.

    Raises:
        UpstreamUnavailable: On timeout, connection failure or any other non-2xx answer.
    """
    try:
        response = requests.delete(
            _url(f"/phone-number/{link_id}"),
            headers=_headers(),
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        log_error(f"Vapi delete request failed for {link_id}", str(e))
        raise UpstreamUnavailable("Voice provider unreachable", str(e))

    if response.status_code == 404:
        log_info(f"Vapi number {link_id} already removed")
        return
    if not response.ok:
        log_error(f"Vapi refused to delete {link_id}", f"{response.status_code}: {response.text[:300]}")
        raise UpstreamUnavailable("Voice provider refused the delete", f"HTTP {response.status_code}")

    log_info(f"Unlinked Vapi number {link_id}")
