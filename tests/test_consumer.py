import pytest
from unittest.mock import AsyncMock, patch, MagicMock
from escrow_service.consumer import process_purchase_completed
from escrow_service.coordinator import ConfirmationCoordinator, ConfirmationOutcome, ConfirmationResult
from escrow_service.orders import derive_order_id
import json

# Async context manager standing in for message.process()
@pytest.fixture
def mock_message_context():
    class AsyncContextManager:
        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            pass

    return AsyncContextManager()

@pytest.fixture
def mock_coordinator():
    coordinator = AsyncMock(spec=ConfirmationCoordinator)
    with patch("escrow_service.consumer.get_coordinator", return_value=coordinator):
        yield coordinator

@pytest.fixture
def mock_publish_event():
    with patch("escrow_service.consumer.publish_event", new=AsyncMock()) as mock_publish:
        yield mock_publish

def make_message(payload, context):
    mock_message = AsyncMock()
    mock_message.body = json.dumps(payload).encode('utf-8')
    mock_message.process = MagicMock(return_value=context)
    return mock_message

@pytest.mark.asyncio
async def test_purchase_completed_settles_escrow(mock_coordinator, mock_publish_event, mock_message_context):
    """
    Successful confirmation publishes EscrowSettled.
    """
    order_id = derive_order_id("payment-1")
    mock_coordinator.confirm.return_value = ConfirmationResult(
        order_id, ConfirmationOutcome.SETTLED, settlement_ref="0xabc", block=3
    )
    message = make_message({
        "event_id": "evt-1",
        "event_type": "PurchaseCompleted",
        "payment_ref": "payment-1",
        "purchase": {"purchase_id": "p-1", "status": "success"}
    }, mock_message_context)

    await process_purchase_completed(message)

    message.process.assert_called_once()
    mock_coordinator.confirm.assert_called_once_with(order_id, {"purchase_id": "p-1", "status": "success"})
    mock_publish_event.assert_called_once()
    args, _ = mock_publish_event.call_args
    assert args[1] == "escrow.settled"
    assert args[2]["event_type"] == "EscrowSettled"
    assert args[2]["settlement_ref"] == "0xabc"
    assert args[2]["already_settled"] is False

@pytest.mark.asyncio
async def test_purchase_completed_already_settled(mock_coordinator, mock_publish_event, mock_message_context):
    """
    Losing the race to the refund sweeper is still reported as settled.
    """
    order_id = derive_order_id("payment-2")
    mock_coordinator.confirm.return_value = ConfirmationResult(order_id, ConfirmationOutcome.ALREADY_SETTLED)
    message = make_message({"order_id": order_id, "purchase": {"status": "success"}}, mock_message_context)

    await process_purchase_completed(message)

    mock_coordinator.confirm.assert_called_once_with(order_id, {"status": "success"})
    args, _ = mock_publish_event.call_args
    assert args[1] == "escrow.settled"
    assert args[2]["already_settled"] is True

@pytest.mark.asyncio
async def test_purchase_completed_confirmation_failure_is_pending(mock_coordinator, mock_publish_event, mock_message_context):
    """
    A failed confirmation publishes EscrowPending instead of an error.
    """
    order_id = derive_order_id("payment-3")
    mock_coordinator.confirm.return_value = ConfirmationResult(
        order_id, ConfirmationOutcome.FAILED, reason="ledger timed out"
    )
    message = make_message({"payment_ref": "payment-3", "purchase": {"status": "success"}}, mock_message_context)

    await process_purchase_completed(message)

    args, _ = mock_publish_event.call_args
    assert args[1] == "escrow.pending"
    assert args[2]["escrow_status"] == "pending"
    assert args[2]["reason"] == "ledger timed out"

@pytest.mark.asyncio
async def test_malformed_purchase_event_is_acknowledged_and_dropped(mock_coordinator, mock_publish_event, mock_message_context):
    """
    A message with neither order_id nor payment_ref is logged, not confirmed.
    """
    message = make_message({"purchase": {"status": "success"}}, mock_message_context)

    await process_purchase_completed(message)

    message.process.assert_called_once()
    mock_coordinator.confirm.assert_not_called()
    mock_publish_event.assert_not_called()
