"""Kafka event log implementation using aiokafka."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Set

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.structs import TopicPartition

from .base import BaseEventLog, LogEntry, encode_fields

logger = logging.getLogger(__name__)


def topic_name(stream: str) -> str:
    """Kafka topics may not contain ``:``; ``stream:a:b`` becomes ``stream.a.b``."""
    return stream.replace(":", ".")


class KafkaEventLog(BaseEventLog):
    """Consumer-group delivery over Kafka.

    Kafka tracks committed offsets rather than per-entry acknowledgements.
    The committed offset of a partition only moves past an entry once it
    and every entry delivered before it are acknowledged, so an unacknowledged
    entry is redelivered after a restart or rebalance together with whatever
    followed it.
    """

    def __init__(self, brokers: Iterable[str] | str = "localhost:9092") -> None:
        self.brokers = [brokers] if isinstance(brokers, str) else list(brokers)
        self._producer: Optional[AIOKafkaProducer] = None
        self._consumers: Dict[tuple[str, str], AIOKafkaConsumer] = {}
        # delivered but unacknowledged, and acknowledged but not yet committed
        self._outstanding: Dict[tuple[str, str], Dict[TopicPartition, Set[int]]] = {}
        self._acked: Dict[tuple[str, str], Dict[TopicPartition, Set[int]]] = {}

    async def connect(self) -> None:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.brokers)
            await self._producer.start()

    async def disconnect(self) -> None:
        for consumer in self._consumers.values():
            await consumer.stop()
        self._consumers.clear()
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def ensure_group(self, stream: str, group: str) -> None:
        key = (stream, group)
        if key in self._consumers:
            return
        consumer = AIOKafkaConsumer(
            topic_name(stream),
            bootstrap_servers=self.brokers,
            group_id=group,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        await consumer.start()
        self._consumers[key] = consumer

    async def append(self, stream: str, fields: Mapping[str, Any]) -> str:
        if not self._producer:
            raise RuntimeError("KafkaEventLog not connected")
        data = json.dumps(encode_fields(fields)).encode()
        meta = await self._producer.send_and_wait(topic_name(stream), value=data)
        return f"{meta.partition}-{meta.offset}"

    async def read(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
        block_ms: Optional[int] = None,
    ) -> list[LogEntry]:
        kafka_consumer = self._consumers.get((stream, group))
        if kafka_consumer is None:
            raise RuntimeError(f"Consumer group {group} not initialised for {stream}")
        batches = await kafka_consumer.getmany(timeout_ms=block_ms or 0, max_records=count)
        entries: list[LogEntry] = []
        outstanding = self._outstanding.setdefault((stream, group), {})
        for tp, records in batches.items():
            for record in records:
                outstanding.setdefault(tp, set()).add(record.offset)
                try:
                    fields = json.loads(record.value.decode())
                except (UnicodeDecodeError, json.JSONDecodeError):
                    logger.warning(f"Skipping undecodable record at offset {record.offset}")
                    fields = {}
                entries.append(
                    LogEntry(
                        entry_id=f"{record.partition}-{record.offset}",
                        stream=stream,
                        fields={str(k): str(v) for k, v in fields.items()},
                        raw=record,
                    )
                )
        return entries

    async def ack(self, group: str, entry: LogEntry) -> None:
        kafka_consumer = self._consumers.get((entry.stream, group))
        if kafka_consumer is None:
            raise RuntimeError("KafkaEventLog not connected")
        record = entry.raw
        key = (entry.stream, group)
        tp = TopicPartition(record.topic, record.partition)
        outstanding = self._outstanding.setdefault(key, {}).setdefault(tp, set())
        acked = self._acked.setdefault(key, {}).setdefault(tp, set())
        outstanding.discard(record.offset)
        acked.add(record.offset)

        floor = min(outstanding) if outstanding else max(acked) + 1
        committable = {offset for offset in acked if offset < floor}
        if not committable:
            logger.debug(f"Offset {record.offset} acknowledged behind an open entry on {tp}")
            return
        acked -= committable
        await kafka_consumer.commit({tp: floor})
