import logging
import threading
import time

import pika
from pydantic import ValidationError as PayloadError

from .checkout import CheckoutOrchestrator
from .errors import (
    OrderNotFoundError,
    PaymentConflictError,
    SignatureMismatchError,
    StoreUnavailableError,
)
from .messaging.producer import EXCHANGE_NAME
from .schemas import PaymentCallback

logger = logging.getLogger(__name__)

# Gateway webhooks are relayed onto the exchange under this key.
PAYMENT_CAPTURED = "gateway.payment.captured"
QUEUE_NAME = "checkout.gateway.payment.captured"

RECONNECT_DELAY_SECONDS = 5


class PaymentCallbackConsumer:
    """Settles gateway orders from payment callbacks relayed through RabbitMQ."""

    def __init__(self, orchestrator: CheckoutOrchestrator, host: str):
        self.orchestrator = orchestrator
        self.host = host
        self.connection = None
        self.channel = None

    def connect(self):
        """Connects to RabbitMQ, retrying until the broker is up."""
        while True:
            try:
                parameters = pika.ConnectionParameters(self.host, heartbeat=600, blocked_connection_timeout=300)
                self.connection = pika.BlockingConnection(parameters)
                self.channel = self.connection.channel()

                self.channel.exchange_declare(exchange=EXCHANGE_NAME, exchange_type="topic", durable=True)
                self.channel.queue_declare(queue=QUEUE_NAME, durable=True)
                self.channel.queue_bind(exchange=EXCHANGE_NAME, queue=QUEUE_NAME, routing_key=PAYMENT_CAPTURED)
                # One unacknowledged callback at a time.
                self.channel.basic_qos(prefetch_count=1)

                logger.info("Payment callback consumer connected to RabbitMQ at %s", self.host)
                break
            except pika.exceptions.AMQPConnectionError:
                logger.warning("RabbitMQ not ready, retrying in %d seconds...", RECONNECT_DELAY_SECONDS)
                time.sleep(RECONNECT_DELAY_SECONDS)

    def handle_message(self, ch, method, properties, body):
        """
        Received 'gateway.payment.captured'.
        Action: verify the signature -> settle the order.

        Callbacks that can never succeed are acked and logged; a store outage
        sends the message back to the queue.
        """
        try:
            callback = PaymentCallback.model_validate_json(body)
        except PayloadError as exc:
            logger.warning("Dropping malformed payment callback: %s", exc.errors()[:3])
            ch.basic_ack(delivery_tag=method.delivery_tag)
            return

        try:
            order = self.orchestrator.finalize_gateway_payment(
                callback.order_id, callback.payment_id, callback.signature
            )
        except (SignatureMismatchError, OrderNotFoundError, PaymentConflictError) as exc:
            logger.warning("Rejected payment callback for gateway order %s: %s", callback.order_id, exc)
            ch.basic_ack(delivery_tag=method.delivery_tag)
            return
        except StoreUnavailableError as exc:
            logger.error("Store unavailable settling gateway order %s, requeueing: %s", callback.order_id, exc)
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
            return

        logger.info("Callback settled order %s (%s)", order.order_id, order.status.value)
        ch.basic_ack(delivery_tag=method.delivery_tag)

    def start_listening(self):
        """Starts the consuming loop."""
        if not self.connection:
            self.connect()

        self.channel.basic_consume(queue=QUEUE_NAME, on_message_callback=self.handle_message)

        logger.info("Payment callback consumer waiting for events...")
        self.channel.start_consuming()


def start_consumer_thread(orchestrator: CheckoutOrchestrator, host: str) -> threading.Thread:
    """Helper to run the consumer in a background thread."""
    consumer = PaymentCallbackConsumer(orchestrator, host)
    thread = threading.Thread(target=consumer.start_listening, name="payment-callbacks", daemon=True)
    thread.start()
    return thread
