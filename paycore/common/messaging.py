import json
import uuid
from typing import Optional

import aio_pika
import structlog

from paycore.config.config import settings
from paycore.common.events import DomainEvent, EventSink, LoggingEventSink
from paycore.common.exception import GeneralDataException

logger = structlog.get_logger()


class RabbitMQConnectionManager:
    def __init__(self, url: str):
        self.url = url
        self.connection: aio_pika.RobustConnection | None = None

    async def connect(self):
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            logger.info("Connected to RabbitMQ")
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    async def disconnect(self):
        if self.connection and not self.connection.is_closed:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")

    async def get_connection(self) -> aio_pika.RobustConnection:
        if self.connection is None or self.connection.is_closed:
            await self.connect()
        return self.connection


rabbitmq_manager: Optional[RabbitMQConnectionManager] = (
    RabbitMQConnectionManager(url=settings.RABBITMQ_URL) if settings.RABBITMQ_URL else None
)


async def publish_message(
    message: dict,
    connection: aio_pika.RobustConnection,
    queue_name: Optional[str] = None,
):
    queue_name = queue_name or settings.RABBITMQ_QUEUE
    try:
        message["mid"] = str(uuid.uuid4())
        body = json.dumps(message, default=str)

        # The connection is shared; only the channel is scoped to this publish
        async with connection.channel() as channel:
            await channel.declare_queue(queue_name, durable=True)
            await channel.default_exchange.publish(
                aio_pika.Message(
                    body=body.encode(),
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                    content_type='application/json'
                ),
                routing_key=queue_name,
            )
    except aio_pika.exceptions.AMQPError as e:
        logger.error(f"RabbitMQ connection error: {e}")
        raise GeneralDataException(
            f"RabbitMQ connection error: {e}",
            context={"detail": f"RabbitMQ connection error: {e}"}
        )
    except Exception as e:
        logger.error(f"Unexpected error when sending message: {str(e)}")
        raise GeneralDataException(
            f"Unexpected error when sending message: {str(e)}",
            context={"detail": f"Unexpected error when sending message: {str(e)}"}
        )


class RabbitMQEventSink(EventSink):
    """Publishes each domain event as a persistent JSON message on a durable queue."""

    def __init__(self, manager: RabbitMQConnectionManager, queue_name: Optional[str] = None):
        self.manager = manager
        self.queue_name = queue_name or settings.RABBITMQ_QUEUE

    async def publish(self, event: DomainEvent) -> None:
        connection = await self.manager.get_connection()
        await publish_message(event.model_dump(mode="json"), connection, self.queue_name)


def build_event_sink() -> EventSink:
    if rabbitmq_manager is not None:
        return RabbitMQEventSink(rabbitmq_manager)
    return LoggingEventSink()
