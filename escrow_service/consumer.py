import asyncio
import json
import logging
import aio_pika
from uuid import uuid4

from escrow_service.client import LedgerClient
from escrow_service.config import settings
from escrow_service.coordinator import ConfirmationCoordinator, ConfirmationOutcome
from escrow_service.messaging import ESCROW_EXCHANGE, publish_event, setup_rabbitmq, close_rabbitmq
from escrow_service.models import utcnow
from escrow_service.orders import derive_order_id

logger = logging.getLogger("escrow.consumer")

PURCHASE_EXCHANGE = "purchase_exchange"

_coordinator = None

def get_coordinator() -> ConfirmationCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = ConfirmationCoordinator(LedgerClient.from_settings(settings, identity=settings.confirmer_id))
    return _coordinator

async def process_purchase_completed(message: aio_pika.IncomingMessage):
    async with message.process():
        try:
            event_data = json.loads(message.body.decode())
            logger.info(f"Escrow consumer received PurchaseCompleted: {event_data.get('event_id')}")

            order_id = event_data.get("order_id") or derive_order_id(event_data["payment_ref"])
            result = await get_coordinator().confirm(order_id, event_data.get("purchase"))

            if result.outcome == ConfirmationOutcome.FAILED:
                # Purchase went through but funds stay locked until confirmed or refunded
                event_to_publish = {
                    "event_id": str(uuid4()),
                    "event_type": "EscrowPending",
                    "timestamp": str(utcnow()),
                    "order_id": order_id,
                    "escrow_status": result.escrow_status,
                    "reason": result.reason
                }
                await publish_event(ESCROW_EXCHANGE, "escrow.pending", event_to_publish)
            else:
                event_to_publish = {
                    "event_id": str(uuid4()),
                    "event_type": "EscrowSettled",
                    "timestamp": str(utcnow()),
                    "order_id": order_id,
                    "escrow_status": result.escrow_status,
                    "already_settled": result.outcome == ConfirmationOutcome.ALREADY_SETTLED,
                    "settlement_ref": result.settlement_ref
                }
                await publish_event(ESCROW_EXCHANGE, "escrow.settled", event_to_publish)

        except Exception as e:
            logger.error(f"Error processing PurchaseCompleted in Escrow consumer: {e}")

async def main():
    await setup_rabbitmq()
    connection = await aio_pika.connect_robust(settings.rabbitmq_url)
    async with connection:
        channel = await connection.channel()

        # Declare exchanges
        purchase_exchange = await channel.declare_exchange(PURCHASE_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        await channel.declare_exchange(ESCROW_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)

        # Declare queue and bind to PurchaseCompleted event
        queue = await channel.declare_queue("escrow_confirm_q", durable=True)
        await queue.bind(purchase_exchange, "purchase.completed")

        logger.info("Escrow consumer is listening for purchase events...")
        await queue.consume(process_purchase_completed)

        try:
            # Keep the main task running
            await asyncio.Future()
        finally:
            await get_coordinator().client.aclose()
            await close_rabbitmq()

def run():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Escrow consumer stopped.")

if __name__ == "__main__":
    run()
