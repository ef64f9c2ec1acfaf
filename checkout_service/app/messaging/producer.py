import json
import logging

import pika

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "events"

ORDER_PLACED = "order.placed"
ORDER_CONFIRMED = "order.confirmed"


class RabbitMQProducer:
    """
    Publishes order events to the durable ``events`` topic exchange.

    Each event opens its own short-lived connection, so one producer can be
    shared by concurrent request handlers.
    """

    def __init__(self, host: str, exchange_name: str = EXCHANGE_NAME, connection_factory=pika.BlockingConnection):
        self.host = host
        self.exchange_name = exchange_name
        self._connection_factory = connection_factory

    def _parameters(self) -> pika.ConnectionParameters:
        return pika.ConnectionParameters(
            host=self.host,
            heartbeat=600,
            blocked_connection_timeout=300,
            connection_attempts=2,
            retry_delay=1,
        )

    def publish_event(self, event_data: dict, routing_key: str = ORDER_PLACED) -> None:
        connection = self._connection_factory(self._parameters())
        try:
            channel = connection.channel()
            channel.exchange_declare(exchange=self.exchange_name, exchange_type="topic", durable=True)
            channel.basic_publish(
                exchange=self.exchange_name,
                routing_key=routing_key,
                body=json.dumps(event_data),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Persist the message on the broker.
                    content_type="application/json",
                ),
            )
            logger.info("Sent event '%s' for order %s", routing_key, event_data.get("orderId"))
        finally:
            connection.close()
