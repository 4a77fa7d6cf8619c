"""
Audit Log Service
=================
Appends operational events to the Airtable "Audit Log" table.

Events recorded:
    - NUMBER_CLAIMED / NUMBER_CLAIM_ROLLED_BACK: line claims and their compensation.
    - NUMBER_UNLINKED / NUMBER_RELEASED: teardown of a line.
    - SUBSCRIPTION_SYNCED / EVENT_UNATTRIBUTABLE: billing event ingestion.
    - SWEEP_COMPLETED: a reconciliation sweep finished.
    - POOL_IMPORTED: numbers added to the pool.

The audit trail is best effort: when Airtable is not configured nothing is
written, and a failed write is logged without failing the caller.
"""

from datetime import datetime, timezone
from functools import lru_cache

from pyairtable import Api

from config import settings
from utils.logger import log_error


@lru_cache(maxsize=1)
def get_audit_table():
    """
    Builds the Airtable table handle on first use.

    Returns:
        Table: The pyairtable table, or None if Airtable credentials are missing.
    """
    if not settings.AIRTABLE_API_KEY or not settings.AIRTABLE_BASE_ID:
        return None
    api = Api(settings.AIRTABLE_API_KEY)
    return api.base(settings.AIRTABLE_BASE_ID).table(settings.AIRTABLE_AUDIT_LOG_TABLE)


def log_event(event_type: str, description: str, details: str = ""):
    """
    Logs a system event to the Audit Log table.

    Args:
        event_type (str): Category of the event (e.g., NUMBER_CLAIMED).
        description (str): Human-readable description of what happened.
        details (str): Additional technical details.

    Returns:
        bool: True if the event was written.
    """
    table = get_audit_table()
    if table is None:
        return False
    try:
        table.create({
            "Event": event_type,
            "Description": description,
            "Details": details,
            "Timestamp": datetime.now(timezone.utc).isoformat()
        })
        return True
    except Exception as e:
        log_error(f"Failed to write audit event {event_type}", str(e))
        return False
