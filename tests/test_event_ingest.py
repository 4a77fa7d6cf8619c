import os
import sys
import threading
from unittest.mock import call, patch

import pytest

# Add the project root to sys.path to allow imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config import settings
from services import subscription_store
from services.billing_models import SubscriptionPayload
from services.event_ingestor import ingest_event
from services.exceptions import UpstreamUnavailable


@pytest.fixture
def account(db):
    return subscription_store.save_account("acct_1", email="owner@example.com", external_customer_id="cus_1")


@patch('services.event_ingestor.log_event')
def test_same_event_twice_writes_one_row(mock_log, account, make_event, make_subscription):
    event = make_event("customer.subscription.created", make_subscription())

    first = ingest_event(event)
    second = ingest_event(event)

    assert first.outcome == "created"
    assert second.outcome == "unchanged"
    assert subscription_store.count_for_subscription("sub_1") == 1
    snapshot = subscription_store.find_by_subscription_id("sub_1")
    assert snapshot.account_id == "acct_1"
    assert snapshot.price_id == "price_basic"
    assert subscription_store.find_account("acct_1").subscription_status == "active"
    # Only the write that changed something is audited
    assert mock_log.call_count == 1


@patch('services.event_ingestor.log_event')
def test_concurrent_duplicates_write_one_row(mock_log, account, make_event, make_subscription):
    event = make_event("customer.subscription.updated", make_subscription())
    barrier = threading.Barrier(4)
    outcomes = []

    def deliver():
        barrier.wait()
        outcomes.append(ingest_event(event).outcome)

    threads = [threading.Thread(target=deliver) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["created", "unchanged", "unchanged", "unchanged"]
    assert subscription_store.count_for_subscription("sub_1") == 1


@patch('services.event_ingestor.log_event')
def test_cancellation_clears_period_bounds(mock_log, account, make_event, make_subscription):
    ingest_event(make_event("customer.subscription.created", make_subscription()))

    canceled = make_subscription(status="canceled", canceled_at=1768435200)
    result = ingest_event(make_event("customer.subscription.deleted", canceled, event_id="evt_2"))

    assert result.outcome == "updated"
    snapshot = subscription_store.find_by_subscription_id("sub_1")
    assert snapshot.status == "canceled"
    assert snapshot.current_period_start is None
    assert snapshot.current_period_end is None
    assert snapshot.canceled_at is not None
    assert subscription_store.find_account("acct_1").subscription_status == "inactive"


@patch('services.event_ingestor.log_event')
def test_scheduled_cancellation_keeps_access(mock_log, account, make_event, make_subscription):
    ingest_event(make_event("customer.subscription.updated", make_subscription(cancel_at_period_end=True)))

    assert subscription_store.find_account("acct_1").subscription_status == "active"
    assert subscription_store.find_by_subscription_id("sub_1").cancel_at_period_end is True


@patch('services.event_ingestor.log_event')
@patch('services.event_ingestor.time.sleep')
@patch('services.stripe_billing.get_subscription')
def test_missing_period_triggers_one_refetch(mock_get, mock_sleep, mock_log, account, make_event, make_subscription):
    lagging = make_subscription(current_period_start=None, current_period_end=None,
                                items={"data": [{"price": {"id": "price_basic"}}]})
    mock_get.return_value = SubscriptionPayload.from_provider(make_subscription())

    result = ingest_event(make_event("customer.subscription.created", lagging))

    assert result.outcome == "created"
    mock_get.assert_called_once_with("sub_1")
    mock_sleep.assert_called_once_with(settings.GRACE_PERIOD_SECONDS)
    snapshot = subscription_store.find_by_subscription_id("sub_1")
    assert snapshot.current_period_start is not None
    assert snapshot.current_period_end is not None


@patch('services.event_ingestor.log_event')
@patch('services.event_ingestor.time.sleep')
@patch('services.stripe_billing.get_subscription', side_effect=UpstreamUnavailable("Billing provider unavailable"))
def test_failed_refetch_keeps_event_data(mock_get, mock_sleep, mock_log, account, make_event, make_subscription):
    lagging = make_subscription(current_period_start=None, current_period_end=None,
                                items={"data": [{"price": {"id": "price_basic"}}]})

    result = ingest_event(make_event("customer.subscription.created", lagging))

    assert result.outcome == "created"
    assert mock_get.call_count == 1
    assert subscription_store.find_by_subscription_id("sub_1").current_period_end is None


@patch('services.stripe_billing.get_subscription')
def test_period_on_items_needs_no_refetch(mock_get, account, make_event, make_subscription):
    newer_shape = make_subscription(
        current_period_start=None,
        current_period_end=None,
        items={"data": [{"price": {"id": "price_basic"},
                         "current_period_start": 1767225600,
                         "current_period_end": 1769904000}]},
    )

    ingest_event(make_event("customer.subscription.created", newer_shape))

    mock_get.assert_not_called()
    assert subscription_store.find_by_subscription_id("sub_1").current_period_end is not None


@patch('services.event_ingestor.log_event')
@patch('services.stripe_billing.get_customer', return_value={"id": "cus_unknown", "email": "nobody@example.com", "metadata": {}})
def test_unattributable_event_is_dropped(mock_customer, mock_log, db, make_event, make_subscription):
    event = make_event("customer.subscription.created", make_subscription(customer="cus_unknown"))

    result = ingest_event(event)

    assert result.outcome == "unattributable"
    assert subscription_store.find_by_subscription_id("sub_1") is None
    mock_customer.assert_called_once_with("cus_unknown")
    assert mock_log.call_args[0][0] == "EVENT_UNATTRIBUTABLE"


@patch('services.event_ingestor.log_event')
def test_subscription_metadata_resolves_account(mock_log, db, make_event, make_subscription):
    subscription_store.save_account("acct_9")
    event = make_event("customer.subscription.created",
                       make_subscription(customer="cus_9", metadata={"account_id": "acct_9"}))

    result = ingest_event(event)

    assert result.account_id == "acct_9"
    assert subscription_store.find_account("acct_9").external_customer_id == "cus_9"


@patch('services.event_ingestor.log_event')
@patch('services.stripe_billing.get_customer', return_value={"id": "cus_9", "email": "Owner@Example.com", "metadata": {}})
def test_customer_email_resolves_account(mock_customer, mock_log, db, make_event, make_subscription):
    subscription_store.save_account("acct_9", email="owner@example.com")

    result = ingest_event(make_event("customer.subscription.created", make_subscription(customer="cus_9")))

    assert result.account_id == "acct_9"
    assert subscription_store.find_account("acct_9").external_customer_id == "cus_9"


@patch('services.event_ingestor.log_event')
@patch('services.stripe_billing.get_customer')
def test_known_subscription_resolves_without_lookup(mock_customer, mock_log, account, make_event, make_subscription):
    ingest_event(make_event("customer.subscription.created", make_subscription()))

    moved = make_subscription(customer="cus_other", status="past_due")
    result = ingest_event(make_event("customer.subscription.updated", moved, event_id="evt_2"))

    assert result.account_id == "acct_1"
    mock_customer.assert_not_called()
    assert subscription_store.find_account("acct_1").subscription_status == "inactive"


@patch('utils.retry.time.sleep')
@patch('services.stripe_billing.get_customer', side_effect=UpstreamUnavailable("Billing provider unavailable"))
def test_provider_outage_is_retried_then_raised(mock_customer, mock_sleep, db, make_event, make_subscription):
    event = make_event("customer.subscription.created", make_subscription(customer="cus_new"))

    with pytest.raises(UpstreamUnavailable):
        ingest_event(event)

    assert mock_customer.call_count == settings.INGEST_MAX_ATTEMPTS
    assert mock_sleep.call_args_list == [call(2.0), call(4.0)]
    assert subscription_store.find_by_subscription_id("sub_1") is None


@patch('services.event_ingestor.log_event')
@patch('utils.retry.time.sleep')
@patch('services.stripe_billing.get_customer')
def test_transient_outage_recovers(mock_customer, mock_sleep, mock_log, db, make_event, make_subscription):
    subscription_store.save_account("acct_9")
    mock_customer.side_effect = [
        UpstreamUnavailable("Billing provider unavailable"),
        {"id": "cus_9", "email": None, "metadata": {"account_id": "acct_9"}},
    ]

    result = ingest_event(make_event("customer.subscription.created", make_subscription(customer="cus_9")))

    assert result.outcome == "created"
    assert result.account_id == "acct_9"
    mock_sleep.assert_called_once_with(2.0)


@patch('services.event_ingestor.log_event')
@patch('services.stripe_billing.get_subscription')
def test_invoice_event_refetches_subscription(mock_get, mock_log, account, make_event, make_subscription):
    mock_get.return_value = SubscriptionPayload.from_provider(make_subscription(status="past_due"))
    invoice = {"id": "in_1", "object": "invoice", "customer": "cus_1", "subscription": "sub_1"}

    result = ingest_event(make_event("invoice.payment_failed", invoice))

    mock_get.assert_called_once_with("sub_1")
    assert result.outcome == "created"
    assert result.status == "past_due"


def test_unhandled_event_type_is_ignored(db, make_event):
    result = ingest_event(make_event("charge.refunded", {"id": "ch_1"}))

    assert result.outcome == "ignored"
    assert result.event_type == "charge.refunded"


@patch('services.event_ingestor.log_event')
@patch('services.event_ingestor.time.sleep')
@patch('services.stripe_billing.get_subscription')
def test_incomplete_checkout_is_refetched_after_grace(mock_get, mock_sleep, mock_log, account, make_event, make_subscription):
    mock_get.return_value = SubscriptionPayload.from_provider(make_subscription(status="active"))

    result = ingest_event(make_event("customer.subscription.created", make_subscription(status="incomplete")))

    assert result.status == "active"
    mock_get.assert_called_once_with("sub_1")
    mock_sleep.assert_called_once_with(settings.GRACE_PERIOD_SECONDS)
    assert subscription_store.find_by_subscription_id("sub_1").status == "active"
    assert subscription_store.find_account("acct_1").subscription_status == "active"


@patch('services.event_ingestor.log_event')
@patch('services.event_ingestor.time.sleep')
@patch('services.stripe_billing.get_subscription')
def test_incomplete_refetch_is_bounded(mock_get, mock_sleep, mock_log, account, make_event, make_subscription):
    mock_get.return_value = SubscriptionPayload.from_provider(make_subscription(status="incomplete"))

    result = ingest_event(make_event("customer.subscription.created", make_subscription(status="incomplete")))

    assert result.status == "incomplete"
    assert mock_get.call_count == settings.INGEST_MAX_ATTEMPTS
    assert mock_sleep.call_args_list == [call(settings.GRACE_PERIOD_SECONDS), call(2.0), call(4.0)]
    assert subscription_store.find_account("acct_1").subscription_status == "inactive"


@patch('services.event_ingestor.log_event')
def test_late_event_for_old_subscription_keeps_account_active(mock_log, account, make_event, make_subscription):
    ingest_event(make_event("customer.subscription.created", make_subscription(id="sub_new")))

    old = make_subscription(id="sub_old", status="canceled", canceled_at=1768435200)
    ingest_event(make_event("customer.subscription.deleted", old, event_id="evt_2"))

    assert subscription_store.find_by_subscription_id("sub_old").status == "canceled"
    assert subscription_store.find_account("acct_1").subscription_status == "active"
