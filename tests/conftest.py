import os
import sys

import pytest

# Add the project root to sys.path to allow imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config import settings
from services import audit_log, database


@pytest.fixture
def db(tmp_path, monkeypatch):
    """A fresh SQLite database file per test."""
    # Keep the audit trail off regardless of the local .env
    monkeypatch.setattr(settings, "AIRTABLE_API_KEY", "")
    audit_log.get_audit_table.cache_clear()

    engine = database.init_engine(f"sqlite:///{tmp_path / 'line_service.db'}")
    yield engine
    engine.dispose()
    audit_log.get_audit_table.cache_clear()


def stripe_subscription(**overrides):
    """A Stripe subscription object as it appears in webhook payloads."""
    subscription = {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_1",
        "status": "active",
        "current_period_start": 1767225600,  # 2026-01-01
        "current_period_end": 1769904000,  # 2026-02-01
        "cancel_at_period_end": False,
        "canceled_at": None,
        "trial_end": None,
        "metadata": {},
        "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": "price_basic"}}]},
    }
    subscription.update(overrides)
    return subscription


def stripe_event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


@pytest.fixture
def make_subscription():
    return stripe_subscription


@pytest.fixture
def make_event():
    return stripe_event
