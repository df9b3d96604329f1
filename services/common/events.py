from __future__ import annotations

import json
import logging
import uuid

from confluent_kafka import Producer

from .network import Event, Network

LOGGER = logging.getLogger('vaultbridge.events')


class KafkaEventPublisher:
    """Publishes committed network events as JSON to a Kafka topic."""

    def __init__(self, bootstrap_servers: str, topic: str, client_id: str = 'vaultbridge-events') -> None:
        self.topic = topic
        self.producer = Producer(
            {
                'bootstrap.servers': bootstrap_servers,
                'client.id': client_id
            }
        )

    def attach(self, network: Network) -> None:
        network.subscribe(self.publish)
        LOGGER.info('event publisher attached network_id=%s topic=%s', network.network_id, self.topic)

    def publish(self, event: Event) -> None:
        correlation_id = str(uuid.uuid4())
        self.producer.produce(
            topic=self.topic,
            key=event.event_id,
            value=json.dumps(event.payload()).encode('utf-8'),
            headers={'correlation_id': correlation_id}
        )
        self.producer.poll(0)
        LOGGER.debug('event published name=%s event_id=%s network_id=%s', event.name, event.event_id, event.network_id)

    def flush(self, timeout: float = 5.0) -> int:
        return self.producer.flush(timeout)
