from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any

from aiokafka import AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic

from infra.kafka_topics import TOPICS
from tradein.data_models import StageEvent

logger = logging.getLogger(__name__)


VALUATION_REQUESTS_TOPIC = "valuation_requests"
VALUATION_STAGE_EVENTS_TOPIC = "valuation_stage_events"
VALUATION_RESULTS_TOPIC = "valuation_results"


class KafkaBus:
    """Publishes valuation messages to Kafka.

    Without a reachable broker, messages are kept in per-topic in-process
    queues holding at most ``fallback_queue_size`` entries; the oldest entry
    is dropped first.
    """

    def __init__(self, bootstrap_servers: str, client_id: str, fallback_queue_size: int = 1000) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.fallback_queue_size = fallback_queue_size
        self._producer: AIOKafkaProducer | None = None
        self._queues: dict[str, deque[dict[str, Any]]] = {}
        self.dropped: dict[str, int] = {}

    async def connect(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
            self._producer = producer
            await self.ensure_topics()
        except Exception as exc:
            logger.warning("Kafka unreachable at %s, using in-process queues: %s", self.bootstrap_servers, exc)
            self._producer = None
            try:
                await producer.stop()
            except Exception as stop_exc:
                logger.debug("Kafka producer stop after failed start: %s", stop_exc)

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()

    async def ensure_topics(self) -> None:
        admin = AIOKafkaAdminClient(bootstrap_servers=self.bootstrap_servers, client_id=self.client_id)
        try:
            await admin.start()
            existing = set(await admin.list_topics())
            missing = [
                NewTopic(
                    name=name,
                    num_partitions=topic["partitions"],
                    replication_factor=topic["replication_factor"],
                    topic_configs={"retention.ms": str(topic["retention_ms"])},
                )
                for name, topic in TOPICS.items()
                if name not in existing
            ]
            if missing:
                await admin.create_topics(missing)
        except Exception as exc:
            logger.warning("Could not create Kafka topics: %s", exc)
        finally:
            try:
                await admin.close()
            except Exception as exc:
                logger.debug("Kafka admin close failed: %s", exc)

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            partitions = await self._producer.partitions_for(VALUATION_REQUESTS_TOPIC)
            return partitions is not None
        except Exception:
            return False

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        if self._producer is not None:
            try:
                encoded_key = None if key is None else key.encode("utf-8")
                await self._producer.send_and_wait(topic, value=value, key=encoded_key)
                return
            except Exception as exc:
                logger.warning("Kafka publish to %s failed, queueing locally: %s", topic, exc)
        queue = self._queues.setdefault(topic, deque(maxlen=self.fallback_queue_size))
        if len(queue) == queue.maxlen:
            self.dropped[topic] = self.dropped.get(topic, 0) + 1
        queue.append(value)

    async def publish_stage_event(self, event: StageEvent) -> None:
        """Stage listener for the orchestrator; the snapshot travels with the event."""
        await self.publish(
            VALUATION_STAGE_EVENTS_TOPIC,
            {
                "valuation_id": event.valuation_id,
                "stage": event.stage,
                "degraded": event.degraded,
                "snapshot": event.snapshot,
            },
            key=event.valuation_id,
        )

    def pending(self, topic: str) -> list[dict[str, Any]]:
        """Messages held in the in-process queue for ``topic`` (no broker mode)."""
        return list(self._queues.get(topic, ()))
