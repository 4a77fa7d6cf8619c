"""
Twilio Numbers Service
======================
Reads and buys the phone numbers that make up the line pool.

Key Functionality:
- Lists the numbers the Twilio account already owns (for pool imports).
- Searches for and purchases a new local number by area code.
"""

from functools import lru_cache

import requests
from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from config import settings
from services.exceptions import UpstreamUnavailable
from utils.logger import log_info, log_error


@lru_cache(maxsize=1)
def get_client() -> Client:
    http_client = TwilioHttpClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
    return Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN, http_client=http_client)


def list_owned_numbers(limit: int = 500):
    """
    Lists the voice-capable numbers owned by the Twilio account.

    Returns:
        list: [{"phone_number": "+13035551234", "sid": "PN..."}]
    """
    try:
        numbers = get_client().incoming_phone_numbers.list(limit=limit)
    except (TwilioException, requests.RequestException) as e:
        log_error("Failed to list Twilio numbers", str(e))
        raise UpstreamUnavailable("Telephony provider unavailable", str(e))

    owned = []
    for number in numbers:
        capabilities = number.capabilities or {}
        if capabilities.get("voice", True):
            owned.append({"phone_number": number.phone_number, "sid": number.sid})
    log_info(f"Found {len(owned)} voice-capable Twilio numbers")
    return owned


def search_and_purchase_number(area_code: str = None):
    """
    Search for and purchase a local phone number from Twilio.

    Args:
        area_code (str): Area code to search (e.g., "303", "720"). Defaults to
            TWILIO_DEFAULT_AREA_CODE.

    Returns:
        dict: {"phone_number": "+13035551234", "sid": "PN..."}

    Raises:
        UpstreamUnavailable: If no numbers are available or the purchase fails.
    """
    area_code = area_code or settings.TWILIO_DEFAULT_AREA_CODE
    client = get_client()
    try:
        log_info(f"Searching for available numbers in area code {area_code or 'any'}")
        search = {"voice_enabled": True, "limit": 10}
        if area_code:
            search["area_code"] = area_code
        available_numbers = client.available_phone_numbers('US').local.list(**search)

        if not available_numbers:
            raise UpstreamUnavailable(f"No available numbers in area code {area_code}")

        number_to_purchase = available_numbers[0].phone_number
        log_info(f"Purchasing number: {number_to_purchase}")
        purchased_number = client.incoming_phone_numbers.create(phone_number=number_to_purchase)
    except (TwilioException, requests.RequestException) as e:
        log_error("Failed to purchase number", str(e))
        raise UpstreamUnavailable("Telephony provider unavailable", str(e))

    log_info("Purchased Twilio Number", f"Number: {purchased_number.phone_number}, SID: {purchased_number.sid}")
    return {"phone_number": purchased_number.phone_number, "sid": purchased_number.sid}
