from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from confluent_kafka import OFFSET_BEGINNING, TIMESTAMP_NOT_AVAILABLE, Consumer, KafkaException, TopicPartition

from .config import KafkaConfig
from .fusion import StreamFusion
from .ledger import Position, utcnow
from .messages import RawMessage, TopicRole

logger = logging.getLogger(__name__)

HOUR_MS = 3_600_000
METADATA_TIMEOUT = 10.0

DEFAULTS = {
    "group.id": "escrow-manager",
    "enable.auto.commit": "false",
    "enable.auto.offset.store": "false",
    "auto.offset.reset": "earliest",
}


def partition_key(topic: str, partition: int) -> str:
    return f"{topic}/{partition}"


def consumer_config(config: KafkaConfig) -> Dict[str, str]:
    merged = dict(config.config)
    for key, value in DEFAULTS.items():
        merged.setdefault(key, value)
    # positions are committed only after a checkpoint is durable
    merged["enable.auto.commit"] = "false"
    return merged


class KafkaSource:
    """Feeds the three topics into StreamFusion and commits after each checkpoint.

    Cold start with a rollup topic: rollups are read from the start of the
    window up to the current end, then realtime receipts start at the hour
    after the latest rollup so the two never count the same fees. Warm start:
    every partition resumes right after its checkpointed offset.
    """

    def __init__(
        self,
        config: KafkaConfig,
        fusion: StreamFusion,
        window_days: int,
        consumer_factory: Callable[[dict], Consumer] = Consumer,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.fusion = fusion
        self.window_days = window_days
        self.clock = clock
        self.consumer = consumer_factory(consumer_config(config))
        self.roles: Dict[str, TopicRole] = {config.receipts_topic: TopicRole.RECEIPTS}
        if config.rollups_topic:
            self.roles[config.rollups_topic] = TopicRole.ROLLUPS
        if config.vouchers_topic:
            self.roles[config.vouchers_topic] = TopicRole.VOUCHERS
        self.ready = threading.Event()

    def _partitions(self, topic: str) -> List[int]:
        metadata = self.consumer.list_topics(topic, timeout=METADATA_TIMEOUT)
        topic_meta = metadata.topics.get(topic)
        if topic_meta is None or topic_meta.error is not None:
            raise KafkaException(topic_meta.error if topic_meta else f"unknown topic {topic}")
        return sorted(topic_meta.partitions)

    def _start_offsets(self, topic: str, start_ms: int, from_beginning: bool = False) -> List[TopicPartition]:
        positions = self.fusion.ledger.positions
        resolved: List[TopicPartition] = []
        by_time: List[TopicPartition] = []
        for partition in self._partitions(topic):
            key = partition_key(topic, partition)
            if key in positions:
                resolved.append(TopicPartition(topic, partition, positions[key] + 1))
            elif from_beginning:
                resolved.append(TopicPartition(topic, partition, OFFSET_BEGINNING))
            else:
                by_time.append(TopicPartition(topic, partition, start_ms))
        if by_time:
            resolved.extend(self.consumer.offsets_for_times(by_time, timeout=METADATA_TIMEOUT))
        return resolved

    def _to_raw(self, msg) -> RawMessage:
        ts_type, ts = msg.timestamp()
        return RawMessage(
            role=self.roles[msg.topic()],
            key=msg.key(),
            value=msg.value(),
            timestamp_ms=ts if ts_type != TIMESTAMP_NOT_AVAILABLE else None,
            position=Position(partition_key(msg.topic(), msg.partition()), msg.offset()),
        )

    def _window_start_ms(self) -> int:
        start = self.clock() - timedelta(days=self.window_days)
        ms = int(start.timestamp() * 1000)
        return ms - ms % HOUR_MS

    def backfill_rollups(self, start_ms: int, stop: threading.Event) -> Optional[int]:
        """Read the rollup topic to its current end. Returns the latest rollup hour seen."""
        topic = self.config.rollups_topic
        assignment = self._start_offsets(topic, start_ms)
        remaining: Dict[int, int] = {}
        for tp in assignment:
            _, high = self.consumer.get_watermark_offsets(TopicPartition(topic, tp.partition), timeout=METADATA_TIMEOUT)
            if 0 <= tp.offset < high:
                remaining[tp.partition] = high - 1
        logger.info({"event": "rollup_backfill_start", "topic": topic, "partitions": len(remaining)})
        if remaining:
            self.consumer.assign(assignment)
            while remaining and not stop.is_set():
                msg = self.consumer.poll(1.0)
                if msg is None:
                    continue
                if msg.error():
                    self._on_error(msg.error())
                    continue
                self.fusion.apply(self._to_raw(msg))
                if msg.offset() >= remaining.get(msg.partition(), msg.offset() + 1):
                    del remaining[msg.partition()]
            self.consumer.unassign()
        latest = self.fusion.latest_rollup_hour_ms
        logger.info({"event": "rollup_backfill_done", "latest_hour_ms": latest})
        return latest

    def assign(self, stop: threading.Event) -> None:
        start_ms = self._window_start_ms()
        receipts_topic = self.config.receipts_topic
        positions = self.fusion.ledger.positions
        warm = any(key.startswith(f"{receipts_topic}/") for key in positions)

        receipts_start = start_ms
        if self.config.rollups_topic and not warm:
            latest = self.backfill_rollups(start_ms, stop)
            if latest is not None:
                receipts_start = latest + HOUR_MS

        assignment = self._start_offsets(receipts_topic, receipts_start)
        if self.config.vouchers_topic:
            # vouchers are cumulative, the whole topic matters
            assignment += self._start_offsets(self.config.vouchers_topic, start_ms, from_beginning=True)
        self.consumer.assign(assignment)
        self.fusion.publish()
        self.ready.set()
        logger.info({
            "event": "assigned",
            "warm_start": warm,
            "receipts_start_ms": receipts_start,
            "partitions": [f"{tp.topic}/{tp.partition}@{tp.offset}" for tp in assignment],
        })

    def _on_error(self, err) -> None:
        if err.fatal():
            raise KafkaException(err)
        logger.error({"event": "kafka_error", "error": str(err), "retriable": err.retriable()})

    def commit(self, positions: Dict[str, int]) -> None:
        offsets = []
        for key, offset in positions.items():
            topic, _, partition = key.rpartition("/")
            if topic in self.roles:
                offsets.append(TopicPartition(topic, int(partition), offset + 1))
        if not offsets:
            return
        try:
            self.consumer.commit(offsets=offsets, asynchronous=False)
        except KafkaException as exc:
            # the checkpoint already holds these positions
            logger.warning({"event": "commit_failed", "error": str(exc)})

    def poll_once(self, timeout: float = 1.0) -> None:
        msg = self.consumer.poll(timeout)
        if msg is not None:
            if msg.error():
                self._on_error(msg.error())
            else:
                self.fusion.apply(self._to_raw(msg))
        positions = self.fusion.maybe_flush()
        if positions is not None:
            self.commit(positions)

    def run(self, stop: threading.Event) -> None:
        try:
            self.assign(stop)
            while not stop.is_set():
                self.poll_once()
        finally:
            positions = self.fusion.flush()
            if positions is not None:
                self.commit(positions)
            self.consumer.close()
