"""Kafka client abstraction module.

All confluent-kafka admin usage is isolated here. Event Hubs namespaces are
reached through their Kafka-compatible endpoint, which authenticates with
SASL PLAIN using the literal username "$ConnectionString" and the namespace
connection string as password.
"""

import logging
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Dict, Iterable, List

from confluent_kafka import Consumer, KafkaException, TopicPartition
from confluent_kafka.admin import AdminClient, OffsetSpec

from config import Config, bootstrap_servers_for
from errors import TransportError
from ledger import OffsetLedger, PartitionProgress

logger = logging.getLogger(__name__)


def _client_conf(config: Config) -> Dict[str, Any]:
    conf = {
        "bootstrap.servers": bootstrap_servers_for(config),
        "security.protocol": config.broker.security_protocol,
    }

    # Add optional SASL/TLS configuration if provided
    if config.broker.sasl_mechanism:
        conf["sasl.mechanism"] = config.broker.sasl_mechanism
    if config.broker.sasl_username:
        conf["sasl.username"] = config.broker.sasl_username
    if config.broker.sasl_password:
        conf["sasl.password"] = config.broker.sasl_password
    if config.broker.ssl_ca_location:
        conf["ssl.ca.location"] = config.broker.ssl_ca_location

    # Warn if security protocol requires SASL but credentials are missing
    if config.broker.security_protocol in ("SASL_PLAINTEXT", "SASL_SSL"):
        if not config.broker.sasl_mechanism or not config.broker.sasl_password:
            logger.warning(
                f"security_protocol={config.broker.security_protocol} but SASL credentials "
                "are incomplete. Configure sasl_mechanism and sasl_password "
                "(the namespace connection string)."
            )

    return conf


def build_admin_client(config: Config) -> AdminClient:
    """Construct and return a configured AdminClient.

    Args:
        config: Configuration object containing broker connection settings

    Returns:
        AdminClient: Configured Kafka admin client
    """
    return AdminClient(_client_conf(config))


def build_consumer(config: Config) -> Consumer:
    """Construct a Consumer for reading batches by explicit assignment.

    Offsets are never committed to the broker; progress lives in the
    progress store.

    Args:
        config: Configuration object

    Returns:
        Consumer: Configured Kafka consumer
    """
    conf = _client_conf(config)
    conf.update(
        {
            "group.id": config.stream.consumer_group,
            "enable.auto.commit": False,
            "enable.partition.eof": True,
            "auto.offset.reset": "earliest",
            "session.timeout.ms": config.broker.receiver_timeout_seconds * 1000,
            "queued.min.messages": config.broker.prefetch_count,
        }
    )
    return Consumer(conf, logger=logger)


def get_partition_ids(admin_client: AdminClient, topic: str, timeout: float = 60) -> List[int]:
    """Return the partition ids of `topic` from cluster metadata.

    Args:
        admin_client: Configured AdminClient instance
        topic: Topic (event hub) name
        timeout: Seconds to wait for metadata

    Returns:
        Sorted list of partition ids

    Raises:
        TransportError: If metadata cannot be fetched or the topic is unknown
    """
    try:
        metadata = admin_client.list_topics(topic=topic, timeout=timeout)
    except KafkaException as e:
        raise TransportError(f"Failed to fetch metadata for {topic}: {e}") from e

    topic_metadata = metadata.topics.get(topic)
    if topic_metadata is None or topic_metadata.error is not None:
        error = topic_metadata.error if topic_metadata is not None else "not found"
        raise TransportError(f"Topic {topic} is not available: {error}")

    return sorted(topic_metadata.partitions)


class HighWaterMarkClient:
    """Broker collaborator that reports the latest available position per partition.

    Owns the transport retry policy. With force_retry a failed request is
    retried with exponentially growing pauses; without it a single attempt
    is made, since the caller has a usable ceiling to fall back on.
    """

    def __init__(
        self,
        admin_client: AdminClient,
        topic: str,
        operation_timeout_seconds: float = 60,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1,
        max_backoff_seconds: float = 32,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._admin_client = admin_client
        self._topic = topic
        self._operation_timeout_seconds = operation_timeout_seconds
        self._max_retries = max_retries
        self._initial_backoff_seconds = initial_backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._sleep = sleep

    @classmethod
    def from_config(cls, admin_client: AdminClient, config: Config) -> "HighWaterMarkClient":
        return cls(
            admin_client,
            config.stream.name,
            operation_timeout_seconds=config.broker.operation_timeout_seconds,
            max_retries=config.broker.max_retries,
            initial_backoff_seconds=config.broker.initial_backoff_seconds,
            max_backoff_seconds=config.broker.max_backoff_seconds,
        )

    def backoff_seconds(self, attempt: int) -> float:
        """Pause before retry number `attempt` (0-based): initial * 2**attempt, capped."""
        return min(self._initial_backoff_seconds * (2 ** attempt), self._max_backoff_seconds)

    def fetch_high_water_mark(self, partitions: Iterable[int], force_retry: bool) -> OffsetLedger:
        """Fetch the latest available position for every partition.

        Args:
            partitions: Partition ids to query
            force_retry: Retry with backoff until max_retries is exhausted

        Returns:
            OffsetLedger: High-water-mark snapshot (batch_id = CEILING_BATCH_ID)

        Raises:
            TransportError: If the broker could not be queried
        """
        partitions = sorted(partitions)
        attempts = 1 + self._max_retries if force_retry else 1
        last_error = None

        for attempt in range(attempts):
            if attempt > 0:
                delay = self.backoff_seconds(attempt - 1)
                logger.warning(
                    f"Retrying high-water-mark fetch for {self._topic} in {delay}s "
                    f"(attempt {attempt + 1}/{attempts}): {last_error}"
                )
                self._sleep(delay)
            try:
                return self._list_latest_offsets(partitions)
            except TransportError as e:
                last_error = e

        raise TransportError(
            f"Failed to fetch high-water mark for {self._topic} after "
            f"{attempts} attempt(s): {last_error}"
        ) from last_error

    def _list_latest_offsets(self, partitions: List[int]) -> OffsetLedger:
        request = {
            TopicPartition(self._topic, partition): OffsetSpec.latest()
            for partition in partitions
        }
        try:
            results = self._admin_client.list_offsets(
                request, request_timeout=self._operation_timeout_seconds
            )
        except KafkaException as e:
            raise TransportError(str(e)) from e

        offsets = {}
        for tp_obj, future in results.items():
            try:
                result = future.result(timeout=self._operation_timeout_seconds)
            except (KafkaException, FuturesTimeoutError) as e:
                raise TransportError(
                    f"latest offset for {tp_obj.topic}/{tp_obj.partition}: {e}"
                ) from e
            # The high watermark is the next offset to be written, so the
            # last available record sits one below it. An empty partition
            # therefore reports the (-1, -1) start-of-stream position.
            last = result.offset - 1
            offsets[tp_obj.partition] = PartitionProgress(last, last)

        missing = set(partitions) - set(offsets)
        if missing:
            raise TransportError(
                f"no latest offset returned for {self._topic} partitions {sorted(missing)}"
            )
        return OffsetLedger.ceiling(partitions, offsets)
