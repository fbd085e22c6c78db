"""Pytest configuration and shared fixtures."""

import pytest
import sys
import os

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import database
from config import (
    BrokerConfig,
    Config,
    OutputConfig,
    PollingConfig,
    ProgressConfig,
    StreamConfig,
)


@pytest.fixture
def db_path(tmp_path):
    """Provide a path to a temporary SQLite database file."""
    return str(tmp_path / "progress.db")


@pytest.fixture
def db_conn(db_path):
    """Provide a SQLite database connection initialized with schema.

    Creates a file-based database at db_path so that other connections
    (e.g., the runner's) can access the same database.
    """
    conn = database.init_db(db_path)
    yield conn
    conn.close()


@pytest.fixture
def make_config(tmp_path):
    """Factory for a minimal Config pointing at temporary paths."""

    def _make(partition_count=2, max_rate_per_partition=1000, **stream_overrides):
        output_dir = tmp_path / "batches"
        output_dir.mkdir(exist_ok=True)
        return Config(
            stream=StreamConfig(
                namespace="test-namespace",
                name="test-hub",
                partition_count=partition_count,
                max_rate_per_partition=max_rate_per_partition,
                **stream_overrides,
            ),
            broker=BrokerConfig(sasl_password="Endpoint=sb://test/"),
            polling=PollingConfig(poll_interval_seconds=0, worker_threads=0),
            progress=ProgressConfig(path=str(tmp_path / "progress.db"), retained_batches=3),
            output=OutputConfig(directory=str(output_dir)),
        )

    return _make
