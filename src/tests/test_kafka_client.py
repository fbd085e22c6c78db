"""Tests for kafka_client.py module."""

import logging
from unittest.mock import MagicMock, patch

import pytest
from confluent_kafka import KafkaException, TopicPartition

import kafka_client
from errors import TransportError
from kafka_client import HighWaterMarkClient
from ledger import CEILING_BATCH_ID, PartitionProgress
from planner import BatchPlanner


def offsets_result(offset):
    """Future whose result() carries a ListOffsetsResultInfo-like object."""
    future = MagicMock()
    future.result.return_value = MagicMock(offset=offset)
    return future


def failing_future(message="broker unavailable"):
    future = MagicMock()
    future.result.side_effect = KafkaException(message)
    return future


def make_admin(*responses):
    """AdminClient mock whose list_offsets returns one response per call.

    Each response is a dict of partition -> future.
    """
    admin = MagicMock()
    admin.list_offsets.side_effect = [
        {TopicPartition("hub", p): f for p, f in response.items()} for response in responses
    ]
    return admin


class TestFetchHighWaterMark:

    def test_returns_last_available_position(self):
        admin = make_admin({0: offsets_result(151), 1: offsets_result(0)})
        client = HighWaterMarkClient(admin, "hub", sleep=MagicMock())

        snapshot = client.fetch_high_water_mark({0, 1}, force_retry=False)

        assert snapshot.batch_id == CEILING_BATCH_ID
        assert snapshot.offsets[0] == PartitionProgress(150, 150)
        # Empty partition reports the start-of-stream position
        assert snapshot.offsets[1] == PartitionProgress(-1, -1)

    def test_passes_operation_timeout(self):
        admin = make_admin({0: offsets_result(1)})
        client = HighWaterMarkClient(admin, "hub", operation_timeout_seconds=12)

        client.fetch_high_water_mark([0], force_retry=False)

        _, kwargs = admin.list_offsets.call_args
        assert kwargs["request_timeout"] == 12

    def test_single_attempt_without_force_retry(self):
        admin = make_admin({0: failing_future()})
        sleep = MagicMock()
        client = HighWaterMarkClient(admin, "hub", max_retries=5, sleep=sleep)

        with pytest.raises(TransportError, match="1 attempt"):
            client.fetch_high_water_mark([0], force_retry=False)

        assert admin.list_offsets.call_count == 1
        sleep.assert_not_called()

    def test_force_retry_backs_off_exponentially(self):
        admin = make_admin(*[{0: failing_future()} for _ in range(4)])
        sleeps = []
        client = HighWaterMarkClient(
            admin,
            "hub",
            max_retries=3,
            initial_backoff_seconds=1,
            max_backoff_seconds=32,
            sleep=sleeps.append,
        )

        with pytest.raises(TransportError, match="4 attempt"):
            client.fetch_high_water_mark([0], force_retry=True)

        assert admin.list_offsets.call_count == 4
        assert sleeps == [1, 2, 4]

    def test_force_retry_recovers(self, caplog):
        admin = make_admin({0: failing_future()}, {0: offsets_result(11)})
        client = HighWaterMarkClient(admin, "hub", max_retries=3, sleep=MagicMock())

        with caplog.at_level(logging.WARNING, logger="kafka_client"):
            snapshot = client.fetch_high_water_mark([0], force_retry=True)

        assert snapshot.offsets[0] == PartitionProgress(10, 10)
        assert any("Retrying" in r.getMessage() for r in caplog.records)

    def test_backoff_is_capped(self):
        client = HighWaterMarkClient(
            MagicMock(), "hub", initial_backoff_seconds=1, max_backoff_seconds=8
        )
        assert [client.backoff_seconds(n) for n in range(6)] == [1, 2, 4, 8, 8, 8]

    def test_list_offsets_exception_is_transport_error(self):
        admin = MagicMock()
        admin.list_offsets.side_effect = KafkaException("no brokers")
        client = HighWaterMarkClient(admin, "hub", sleep=MagicMock())

        with pytest.raises(TransportError, match="no brokers"):
            client.fetch_high_water_mark([0], force_retry=False)

    def test_missing_partition_in_result_is_transport_error(self):
        admin = make_admin({0: offsets_result(5)})
        client = HighWaterMarkClient(admin, "hub", sleep=MagicMock())

        with pytest.raises(TransportError, match=r"partitions \[1\]"):
            client.fetch_high_water_mark([0, 1], force_retry=False)

    def test_planner_reuses_ceiling_when_result_is_partial(self):
        admin = make_admin(
            {0: offsets_result(50), 1: offsets_result(50)},
            {0: offsets_result(60)},
        )
        client = HighWaterMarkClient(admin, "hub", sleep=MagicMock())
        planner = BatchPlanner([0, 1], client, max_rate_per_partition=10)
        planner.commit(planner.plan_next_batch())

        second = planner.plan_next_batch()

        assert second.offsets[0].offset == 19
        assert planner.last_fetched_ceiling.offsets[0] == PartitionProgress(49, 49)


class TestGetPartitionIds:

    def test_returns_sorted_partitions(self):
        topic_metadata = MagicMock(error=None, partitions={2: object(), 0: object(), 1: object()})
        admin = MagicMock()
        admin.list_topics.return_value = MagicMock(topics={"hub": topic_metadata})

        assert kafka_client.get_partition_ids(admin, "hub", timeout=5) == [0, 1, 2]
        admin.list_topics.assert_called_once_with(topic="hub", timeout=5)

    def test_unknown_topic_raises(self):
        admin = MagicMock()
        admin.list_topics.return_value = MagicMock(topics={})

        with pytest.raises(TransportError, match="not available"):
            kafka_client.get_partition_ids(admin, "hub")

    def test_metadata_failure_raises(self):
        admin = MagicMock()
        admin.list_topics.side_effect = KafkaException("timed out")

        with pytest.raises(TransportError, match="timed out"):
            kafka_client.get_partition_ids(admin, "hub")


class TestBuildClients:

    def test_admin_client_targets_namespace_endpoint(self, make_config):
        cfg = make_config()

        with patch.object(kafka_client, "AdminClient") as admin_cls:
            kafka_client.build_admin_client(cfg)

        conf = admin_cls.call_args[0][0]
        assert conf["bootstrap.servers"] == "test-namespace.servicebus.windows.net:9093"
        assert conf["security.protocol"] == "SASL_SSL"
        assert conf["sasl.mechanism"] == "PLAIN"
        assert conf["sasl.username"] == "$ConnectionString"
        assert conf["sasl.password"] == "Endpoint=sb://test/"

    def test_missing_password_warns(self, make_config, caplog):
        cfg = make_config()
        cfg.broker.sasl_password = None

        with patch.object(kafka_client, "AdminClient"):
            with caplog.at_level(logging.WARNING, logger="kafka_client"):
                kafka_client.build_admin_client(cfg)

        assert any("incomplete" in r.getMessage() for r in caplog.records)

    def test_consumer_uses_consumer_group_without_auto_commit(self, make_config):
        cfg = make_config(consumer_group="analytics")

        with patch.object(kafka_client, "Consumer") as consumer_cls:
            kafka_client.build_consumer(cfg)

        conf = consumer_cls.call_args[0][0]
        assert conf["group.id"] == "analytics"
        assert conf["enable.auto.commit"] is False
        assert conf["queued.min.messages"] == 500
