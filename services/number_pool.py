"""
Number Pool Service
===================
Keeps the line pool stocked.

Key Functionality:
- Imports the numbers the Twilio account already owns into the pool.
- Buys new numbers by area code when the pool runs low.
- Reports pool statistics.

Imports are idempotent: a number already in the pool is skipped.
"""

from services import resource_store, twilio_numbers
from services.audit_log import log_event
from utils.logger import log_info, log_success


def import_owned_numbers():
    """
    Adds every voice-capable Twilio number to the pool.

    Returns:
        dict: {"imported": [...numbers], "skipped": int}
    """
    imported = []
    skipped = 0
    for number in twilio_numbers.list_owned_numbers():
        _, created = resource_store.add_resource(number["phone_number"], provider_sid=number["sid"])
        if created:
            imported.append(number["phone_number"])
        else:
            skipped += 1

    log_success(f"Imported {len(imported)} number(s) into the pool", f"{skipped} already present")
    if imported:
        log_event("POOL_IMPORTED", f"Imported {len(imported)} Twilio number(s) into the pool", ", ".join(imported))
    return {"imported": imported, "skipped": skipped}


def purchase_numbers(count: int = 1, area_code: str = None):
    """
    Buys `count` new local numbers and adds them to the pool.

    Stops at the first failed purchase and raises it; numbers bought before
    that are already in the pool.

    Returns:
        list: The purchased E.164 numbers.
    """
    purchased = []
    for _ in range(max(1, count)):
        number = twilio_numbers.search_and_purchase_number(area_code)
        resource_store.add_resource(number["phone_number"], provider_sid=number["sid"])
        purchased.append(number["phone_number"])

    log_info(f"Added {len(purchased)} purchased number(s) to the pool")
    log_event("POOL_IMPORTED", f"Purchased {len(purchased)} number(s) for the pool", ", ".join(purchased))
    return purchased


def get_pool_status():
    return resource_store.pool_stats()
