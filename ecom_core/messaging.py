from __future__ import annotations

import datetime as dt
import json
import logging

import pika
from pika.exceptions import AMQPError

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes domain events to a RabbitMQ topic exchange after commit.

    With an empty URL publishing is switched off. Broker failures are logged
    and never undo the already-committed change that produced the event.
    """

    def __init__(self, url: str, exchange: str = "ecom.events"):
        self.url = url
        self.exchange = exchange

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def _connect(self) -> pika.BlockingConnection:
        params = pika.URLParameters(self.url)
        params.heartbeat = 30
        params.blocked_connection_timeout = 30
        return pika.BlockingConnection(params)

    def publish(self, routing_key: str, payload: dict) -> None:
        if not self.enabled:
            return
        body = {
            "event": routing_key,
            "occurred_at": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
            **payload,
        }
        try:
            connection = self._connect()
            try:
                ch = connection.channel()
                ch.exchange_declare(exchange=self.exchange, exchange_type="topic", durable=True)
                ch.basic_publish(
                    exchange=self.exchange,
                    routing_key=routing_key,
                    body=json.dumps(body, ensure_ascii=False, default=str).encode("utf-8"),
                    properties=pika.BasicProperties(
                        content_type="application/json",
                        delivery_mode=2,
                    ),
                )
            finally:
                connection.close()
        except AMQPError:
            logger.exception("event publish failed", extra={"routing_key": routing_key})
