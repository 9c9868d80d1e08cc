import json
import logging
import aio_pika
from escrow_service.config import settings

logger = logging.getLogger("escrow.messaging")

ESCROW_EXCHANGE = "escrow_exchange"

connection = None
channel = None

async def setup_rabbitmq():
    global connection, channel
    try:
        connection = await aio_pika.connect_robust(settings.rabbitmq_url)
        channel = await connection.channel()
        # Declare exchange for escrow ledger events
        await channel.declare_exchange(ESCROW_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("RabbitMQ setup complete.")
    except Exception as e:
        logger.error(f"Error setting up RabbitMQ: {e}")

async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None

async def publish_event(exchange_name: str, routing_key: str, message_data: dict):
    """Best-effort publish; the ledger write it describes is already committed."""
    if not channel:
        logger.warning(f"RabbitMQ channel not available. Dropping {message_data['event_type']} event.")
        return

    message_body = json.dumps(message_data, default=str).encode('utf-8')
    message = aio_pika.Message(
        message_body,
        content_type='application/json',
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT
    )

    try:
        exchange = await channel.get_exchange(exchange_name)
        await exchange.publish(
            message,
            routing_key=routing_key
        )
        logger.info(f"Published event to {routing_key}: {message_data['event_type']}")
    except Exception as e:
        logger.error(f"Error publishing event: {e}")
