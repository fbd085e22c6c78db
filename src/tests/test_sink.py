"""Tests for sink.py module."""

import json
import os
from unittest.mock import patch

import pytest

from ledger import OffsetLedger, PartitionProgress
from reader import EventRecord
from sink import BatchSink


def make_record(offset, body=b"hello"):
    return EventRecord(
        body=body, offset=offset, sequence_number=offset, enqueued_time=1.5, partition=0
    )


LEDGER = OffsetLedger(batch_id=7, offsets={0: PartitionProgress(1, 1)})


def test_write_produces_batch_file(tmp_path):
    sink = BatchSink(str(tmp_path))

    path = sink.write(LEDGER, [make_record(0), make_record(1)])

    assert os.path.basename(path) == "batch-000000000007.json"
    with open(path) as f:
        data = json.load(f)
    assert data["ledger"]["batch_id"] == 7
    assert [r["offset"] for r in data["records"]] == [0, 1]
    assert data["records"][0]["body"] == "hello"
    assert data["records"][0]["body_encoding"] == "utf-8"
    assert not os.path.exists(f"{path}.tmp")


def test_binary_body_is_base64(tmp_path):
    sink = BatchSink(str(tmp_path))

    path = sink.write(LEDGER, [make_record(0, body=b"\xff\xfe")])

    with open(path) as f:
        record = json.load(f)["records"][0]
    assert record["body"] == "//4="
    assert record["body_encoding"] == "base64"


def test_rewrite_same_batch_replaces_file(tmp_path):
    sink = BatchSink(str(tmp_path))
    sink.write(LEDGER, [make_record(0)])

    path = sink.write(LEDGER, [make_record(0), make_record(1)])

    with open(path) as f:
        assert len(json.load(f)["records"]) == 2
    assert os.listdir(tmp_path) == ["batch-000000000007.json"]


def test_failed_write_removes_temp_file(tmp_path):
    sink = BatchSink(str(tmp_path))

    with patch("sink.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(OSError, match="disk full"):
            sink.write(LEDGER, [make_record(0)])

    assert os.listdir(tmp_path) == []
