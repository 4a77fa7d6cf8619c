import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

# Add the project root to sys.path to allow imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from services import resource_store, subscription_store
from services.database import TelephonyResource, session_scope
from services.exceptions import NoAssignedLine, ProvisioningFailed, ResourceExhausted, UpstreamUnavailable
from services.line_allocator import claim_line, relink_line


def _add_account(account_id, routing_id="asst_1"):
    subscription_store.save_account(account_id, assistant_routing_id=routing_id)


def _add_line(number, age_minutes=0):
    resource, _ = resource_store.add_resource(number)
    created_at = datetime.now(timezone.utc) - timedelta(minutes=age_minutes)
    with session_scope() as session:
        session.execute(
            update(TelephonyResource).where(TelephonyResource.id == resource.id).values(created_at=created_at)
        )
    return resource


@patch('services.line_allocator.log_event')
@patch('services.vapi_client.link_number')
def test_concurrent_claims_for_last_line_have_one_winner(mock_link, mock_log, db):
    mock_link.side_effect = lambda number, routing_id: f"vapi_{routing_id}"
    _add_line("+15550000001")
    callers = 8
    for i in range(callers):
        _add_account(f"acct_{i}", routing_id=f"asst_{i}")

    barrier = threading.Barrier(callers)
    results, exhausted, unexpected = [], [], []

    def attempt(i):
        barrier.wait()
        try:
            results.append(claim_line(f"acct_{i}"))
        except ResourceExhausted as e:
            exhausted.append(e)
        except Exception as e:
            unexpected.append(e)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(callers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert unexpected == []
    assert len(results) == 1
    assert len(exhausted) == callers - 1

    line = resource_store.find_resource_by_number("+15550000001")
    assert line.owner_account_id == results[0].account_id
    assert line.external_link_id == f"vapi_asst_{results[0].account_id.split('_')[1]}"
    mock_link.assert_called_once()


@patch('services.line_allocator.log_event')
@patch('services.vapi_client.link_number', return_value="vapi_abc")
def test_claim_takes_oldest_line_and_records_link(mock_link, mock_log, db):
    _add_account("acct_1")
    _add_line("+15550000002", age_minutes=5)
    _add_line("+15550000001", age_minutes=60)

    result = claim_line("acct_1")

    assert result.number == "+15550000001"
    assert result.link_id == "vapi_abc"
    assert result.already_assigned is False
    mock_link.assert_called_once_with("+15550000001", "asst_1")

    line = resource_store.find_resource_by_number("+15550000001")
    assert line.owner_account_id == "acct_1"
    assert line.is_available_for_claim is False
    assert line.claimed_at is not None
    assert line.external_linked_at is not None
    assert resource_store.count_available() == 1
    assert mock_log.call_args[0][0] == "NUMBER_CLAIMED"


@patch('services.line_allocator.log_event')
@patch('services.vapi_client.link_number', side_effect=UpstreamUnavailable("Voice provider rejected the number"))
def test_failed_link_returns_line_to_pool(mock_link, mock_log, db):
    _add_account("acct_1")
    _add_line("+15550000001")

    with pytest.raises(ProvisioningFailed) as error:
        claim_line("acct_1")

    assert error.value.state == "RolledBack"
    line = resource_store.find_resource_by_number("+15550000001")
    assert line.owner_account_id is None
    assert line.is_available_for_claim is True
    assert line.claimed_at is None
    assert line.external_link_id is None
    mock_log.assert_called_once()
    assert mock_log.call_args[0][0] == "NUMBER_CLAIM_ROLLED_BACK"


@patch('services.line_allocator.log_event')
@patch('services.vapi_client.unlink_number')
@patch('services.vapi_client.link_number', return_value="vapi_abc")
@patch('services.resource_store.mark_linked', return_value=False)
def test_unstored_link_is_undone_and_line_returned(mock_mark, mock_link, mock_unlink, mock_log, db):
    _add_account("acct_1")
    _add_line("+15550000001")

    with pytest.raises(ProvisioningFailed):
        claim_line("acct_1")

    mock_unlink.assert_called_once_with("vapi_abc")
    line = resource_store.find_resource_by_number("+15550000001")
    assert line.owner_account_id is None
    assert line.is_available_for_claim is True


@patch('services.vapi_client.link_number')
def test_empty_pool_is_exhausted(mock_link, db):
    _add_account("acct_1")

    with pytest.raises(ResourceExhausted):
        claim_line("acct_1")

    mock_link.assert_not_called()


@patch('services.vapi_client.link_number')
def test_account_without_assistant_claims_nothing(mock_link, db):
    subscription_store.save_account("acct_1")
    _add_line("+15550000001")

    with pytest.raises(ProvisioningFailed):
        claim_line("acct_1")

    mock_link.assert_not_called()
    assert resource_store.count_available() == 1


@patch('services.line_allocator.log_event')
@patch('services.vapi_client.link_number', return_value="vapi_abc")
def test_second_claim_returns_existing_line(mock_link, mock_log, db):
    _add_account("acct_1")
    _add_line("+15550000001", age_minutes=10)
    _add_line("+15550000002")

    first = claim_line("acct_1")
    second = claim_line("acct_1")

    assert second.already_assigned is True
    assert second.number == first.number
    assert mock_link.call_count == 1
    assert resource_store.count_available() == 1


@patch('services.line_allocator.log_event')
@patch('services.vapi_client.link_number', return_value="vapi_new")
def test_claim_relinks_owned_but_unlinked_line(mock_link, mock_log, db):
    _add_account("acct_1")
    line = _add_line("+15550000001")
    _add_line("+15550000002")
    resource_store.claim_resource(line.id, "acct_1")

    result = claim_line("acct_1")

    assert result.number == "+15550000001"
    assert result.link_id == "vapi_new"
    assert resource_store.count_available() == 1


@patch('services.line_allocator.log_event')
@patch('services.vapi_client.link_number', side_effect=UpstreamUnavailable("timeout"))
def test_failed_relink_keeps_ownership(mock_link, mock_log, db):
    _add_account("acct_1")
    line = _add_line("+15550000001")
    resource_store.claim_resource(line.id, "acct_1")

    with pytest.raises(ProvisioningFailed):
        relink_line("acct_1")

    line = resource_store.find_resource_by_number("+15550000001")
    assert line.owner_account_id == "acct_1"
    assert line.external_link_id is None


@patch('services.vapi_client.link_number')
def test_relink_already_connected_line_is_noop(mock_link, db):
    _add_account("acct_1")
    line = _add_line("+15550000001")
    resource_store.claim_resource(line.id, "acct_1")
    resource_store.mark_linked(line.id, "acct_1", "vapi_abc")

    result = relink_line("acct_1")

    assert result.already_assigned is True
    mock_link.assert_not_called()


def test_relink_without_line(db):
    _add_account("acct_1")

    with pytest.raises(NoAssignedLine):
        relink_line("acct_1")


@patch('services.line_allocator.log_event')
@patch('services.resource_store.revert_claim', side_effect=OperationalError("UPDATE telephony_resources", {}, Exception("database is locked")))
@patch('services.vapi_client.link_number', side_effect=UpstreamUnavailable("timeout"))
def test_failed_rollback_is_reported(mock_link, mock_revert, mock_log, db):
    _add_account("acct_1")
    _add_line("+15550000001")

    with pytest.raises(ProvisioningFailed) as error:
        claim_line("acct_1")

    assert error.value.state == "Failed"
    line = resource_store.find_resource_by_number("+15550000001")
    assert line.owner_account_id == "acct_1"
    assert line.external_link_id is None
    assert mock_log.call_args[0][0] == "NUMBER_CLAIM_ROLLBACK_FAILED"
