"""Configuration loading and validation module.

This module handles all YAML configuration loading and provides a typed
Config dataclass consumed by all other modules. String values coming from
the file (or from templated deployments that quote everything) are turned
into numbers only through the parse_* functions below, each of which raises
InvalidConfiguration naming the offending field.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

from errors import InvalidConfiguration

DEFAULT_MAX_RATE_PER_PARTITION = 1000
DEFAULT_CONSUMER_GROUP = "$Default"
DEFAULT_RECEIVER_TIMEOUT_SECONDS = 60
DEFAULT_OPERATION_TIMEOUT_SECONDS = 60
EVENTHUBS_KAFKA_PORT = 9093
DEFAULT_PREFETCH_COUNT = 500
PREFETCH_COUNT_MINIMUM = 10

_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


@dataclass
class StreamConfig:
    """Event stream identity and consumption limits."""
    namespace: str
    name: str
    partition_count: int
    consumer_group: str = DEFAULT_CONSUMER_GROUP
    max_rate_per_partition: int = DEFAULT_MAX_RATE_PER_PARTITION
    max_rate_overrides: Dict[int, int] = field(default_factory=dict)
    fail_on_data_loss: bool = True

    @property
    def partitions(self):
        return list(range(self.partition_count))


@dataclass
class BrokerConfig:
    """Broker connection configuration (Event Hubs Kafka endpoint)."""
    bootstrap_servers: Optional[str] = None
    security_protocol: str = "SASL_SSL"
    sasl_mechanism: Optional[str] = "PLAIN"
    sasl_username: Optional[str] = "$ConnectionString"
    sasl_password: Optional[str] = None
    ssl_ca_location: Optional[str] = None
    receiver_timeout_seconds: int = DEFAULT_RECEIVER_TIMEOUT_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    max_retries: int = 5
    initial_backoff_seconds: int = 1
    max_backoff_seconds: int = 32
    prefetch_count: int = DEFAULT_PREFETCH_COUNT


@dataclass
class PollingConfig:
    """Polling loop behavior."""
    poll_interval_seconds: int = 10
    worker_threads: int = 1


@dataclass
class ProgressConfig:
    """Progress store configuration."""
    path: str
    retained_batches: int = 100
    vacuum_interval_batches: int = 100


@dataclass
class OutputConfig:
    """Output configuration."""
    directory: str


@dataclass
class Config:
    """Root configuration dataclass."""
    stream: StreamConfig
    broker: BrokerConfig
    polling: PollingConfig
    progress: ProgressConfig
    output: OutputConfig


def bootstrap_servers_for(config: Config) -> str:
    """Return the configured bootstrap servers, or the namespace's Kafka endpoint."""
    if config.broker.bootstrap_servers:
        return config.broker.bootstrap_servers
    return f"{config.stream.namespace}.servicebus.windows.net:{EVENTHUBS_KAFKA_PORT}"


def parse_int(value: Any, field_name: str) -> int:
    """Parse an integer from an int or a decimal string.

    Args:
        value: The raw value from the configuration source
        field_name: Name of the field for error messages

    Returns:
        The parsed integer

    Raises:
        InvalidConfiguration: If the value is not an integer
    """
    if isinstance(value, bool):
        raise InvalidConfiguration(
            f"Field '{field_name}' must be an integer, got bool"
        )
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip(), 10)
        except ValueError:
            raise InvalidConfiguration(
                f"Field '{field_name}' must be an integer, got {value!r}"
            ) from None
    raise InvalidConfiguration(
        f"Field '{field_name}' must be an integer, got {type(value).__name__}"
    )


def parse_partition_id(value: Any, field_name: str = "partition") -> int:
    """Parse a non-negative partition id."""
    partition = parse_int(value, field_name)
    if partition < 0:
        raise InvalidConfiguration(f"Field '{field_name}' must be >= 0, got {partition}")
    return partition


def parse_rate(value: Any, field_name: str = "max_rate_per_partition") -> int:
    """Parse a per-partition rate, which must be positive."""
    rate = parse_int(value, field_name)
    if rate <= 0:
        raise InvalidConfiguration(f"Field '{field_name}' must be > 0, got {rate}")
    return rate


def parse_offset(value: Any, field_name: str = "offset") -> int:
    """Parse an offset. -1 is the start-of-stream sentinel."""
    offset = parse_int(value, field_name)
    if offset < -1:
        raise InvalidConfiguration(f"Field '{field_name}' must be >= -1, got {offset}")
    return offset


def parse_sequence_number(value: Any, field_name: str = "sequence_number") -> int:
    """Parse a sequence number. -1 is the start-of-stream sentinel."""
    seq = parse_int(value, field_name)
    if seq < -1:
        raise InvalidConfiguration(f"Field '{field_name}' must be >= -1, got {seq}")
    return seq


def parse_bool(value: Any, field_name: str) -> bool:
    """Parse a boolean from a bool or one of the usual true/false strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise InvalidConfiguration(f"Field '{field_name}' must be a boolean, got {value!r}")


def _get_nested(data: dict, path: str, required: bool = True, default: Any = None) -> Any:
    """Get a nested value from a dictionary using dot notation.

    Args:
        data: The dictionary to search
        path: Dot-separated path to the value (e.g., "stream.name")
        required: If True, raises InvalidConfiguration when value is missing
        default: Default value if not required and missing

    Returns:
        The value at the path, or default if not required and missing

    Raises:
        InvalidConfiguration: If required value is missing
    """
    keys = path.split(".")
    current = data

    for key in keys:
        if not isinstance(current, dict):
            if required:
                raise InvalidConfiguration(
                    f"Configuration path '{path}' is not a valid nested structure"
                )
            return default
        if key not in current or current[key] is None:
            if required:
                raise InvalidConfiguration(f"Missing required configuration field: {path}")
            return default
        current = current[key]

    return current


def _validate_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise InvalidConfiguration(
            f"Field '{field_name}' must be a string, got {type(value).__name__}"
        )
    if not value.strip():
        raise InvalidConfiguration(f"Field '{field_name}' must not be empty")
    return value


def _optional_str(data: dict, key: str, section: str, default: Optional[str]) -> Optional[str]:
    value = _get_nested(data, key, required=False, default=default)
    if value is not None:
        _validate_str(value, f"{section}.{key}")
    return value


def _parse_rate_overrides(raw: Any, partition_count: int) -> Dict[int, int]:
    if not isinstance(raw, dict):
        raise InvalidConfiguration(
            f"Field 'stream.max_rate_overrides' must be a mapping, got {type(raw).__name__}"
        )
    overrides = {}
    for key, value in raw.items():
        partition = parse_partition_id(key, f"stream.max_rate_overrides[{key!r}]")
        if partition >= partition_count:
            raise InvalidConfiguration(
                f"stream.max_rate_overrides names partition {partition}, "
                f"but stream.partition_count is {partition_count}"
            )
        overrides[partition] = parse_rate(value, f"stream.max_rate_overrides[{key!r}]")
    return overrides


def load_config(path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Config: Validated configuration object

    Raises:
        InvalidConfiguration: If the file cannot be read or configuration is invalid
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise InvalidConfiguration(f"Configuration file not found: {path}")
    except yaml.YAMLError as e:
        raise InvalidConfiguration(f"Invalid YAML in configuration file: {e}")

    if data is None:
        raise InvalidConfiguration("Configuration file is empty")

    if not isinstance(data, dict):
        raise InvalidConfiguration("Configuration file must contain a YAML dictionary")

    return config_from_dict(data)


def config_from_dict(data: dict) -> Config:
    """Build a validated Config from an already-parsed mapping.

    Raises:
        InvalidConfiguration: If configuration is invalid
    """
    # Stream configuration
    stream_data = _get_nested(data, "stream")
    namespace = _validate_str(_get_nested(stream_data, "namespace"), "stream.namespace")
    name = _validate_str(_get_nested(stream_data, "name"), "stream.name")

    partition_count = parse_int(
        _get_nested(stream_data, "partition_count"), "stream.partition_count"
    )
    if partition_count <= 0:
        raise InvalidConfiguration("stream.partition_count must be > 0")

    consumer_group = _optional_str(
        stream_data, "consumer_group", "stream", DEFAULT_CONSUMER_GROUP
    )
    max_rate_per_partition = parse_rate(
        _get_nested(
            stream_data,
            "max_rate_per_partition",
            required=False,
            default=DEFAULT_MAX_RATE_PER_PARTITION,
        ),
        "stream.max_rate_per_partition",
    )
    max_rate_overrides = _parse_rate_overrides(
        _get_nested(stream_data, "max_rate_overrides", required=False, default={}),
        partition_count,
    )
    fail_on_data_loss = parse_bool(
        _get_nested(stream_data, "fail_on_data_loss", required=False, default=True),
        "stream.fail_on_data_loss",
    )

    stream = StreamConfig(
        namespace=namespace,
        name=name,
        partition_count=partition_count,
        consumer_group=consumer_group,
        max_rate_per_partition=max_rate_per_partition,
        max_rate_overrides=max_rate_overrides,
        fail_on_data_loss=fail_on_data_loss,
    )

    # Broker configuration
    broker_data = _get_nested(data, "broker", required=False, default={})
    defaults = BrokerConfig()

    broker = BrokerConfig(
        bootstrap_servers=_optional_str(broker_data, "bootstrap_servers", "broker", None),
        security_protocol=_optional_str(
            broker_data, "security_protocol", "broker", defaults.security_protocol
        ),
        sasl_mechanism=_optional_str(
            broker_data, "sasl_mechanism", "broker", defaults.sasl_mechanism
        ),
        sasl_username=_optional_str(
            broker_data, "sasl_username", "broker", defaults.sasl_username
        ),
        sasl_password=_optional_str(broker_data, "sasl_password", "broker", None),
        ssl_ca_location=_optional_str(broker_data, "ssl_ca_location", "broker", None),
        receiver_timeout_seconds=parse_int(
            _get_nested(
                broker_data,
                "receiver_timeout_seconds",
                required=False,
                default=defaults.receiver_timeout_seconds,
            ),
            "broker.receiver_timeout_seconds",
        ),
        operation_timeout_seconds=parse_int(
            _get_nested(
                broker_data,
                "operation_timeout_seconds",
                required=False,
                default=defaults.operation_timeout_seconds,
            ),
            "broker.operation_timeout_seconds",
        ),
        max_retries=parse_int(
            _get_nested(broker_data, "max_retries", required=False, default=defaults.max_retries),
            "broker.max_retries",
        ),
        initial_backoff_seconds=parse_int(
            _get_nested(
                broker_data,
                "initial_backoff_seconds",
                required=False,
                default=defaults.initial_backoff_seconds,
            ),
            "broker.initial_backoff_seconds",
        ),
        max_backoff_seconds=parse_int(
            _get_nested(
                broker_data,
                "max_backoff_seconds",
                required=False,
                default=defaults.max_backoff_seconds,
            ),
            "broker.max_backoff_seconds",
        ),
        prefetch_count=parse_int(
            _get_nested(
                broker_data, "prefetch_count", required=False, default=defaults.prefetch_count
            ),
            "broker.prefetch_count",
        ),
    )

    # Range validation for broker config fields
    if broker.receiver_timeout_seconds <= 0:
        raise InvalidConfiguration("broker.receiver_timeout_seconds must be > 0")
    if broker.operation_timeout_seconds <= 0:
        raise InvalidConfiguration("broker.operation_timeout_seconds must be > 0")
    if broker.max_retries < 0:
        raise InvalidConfiguration("broker.max_retries must be >= 0")
    if broker.initial_backoff_seconds < 0:
        raise InvalidConfiguration("broker.initial_backoff_seconds must be >= 0")
    if broker.max_backoff_seconds < broker.initial_backoff_seconds:
        raise InvalidConfiguration(
            "broker.max_backoff_seconds must be >= initial_backoff_seconds"
        )
    if broker.prefetch_count < PREFETCH_COUNT_MINIMUM:
        raise InvalidConfiguration(
            f"broker.prefetch_count must be >= {PREFETCH_COUNT_MINIMUM}"
        )

    # Polling configuration
    polling_data = _get_nested(data, "polling", required=False, default={})
    polling = PollingConfig(
        poll_interval_seconds=parse_int(
            _get_nested(polling_data, "poll_interval_seconds", required=False, default=10),
            "polling.poll_interval_seconds",
        ),
        worker_threads=parse_int(
            _get_nested(polling_data, "worker_threads", required=False, default=1),
            "polling.worker_threads",
        ),
    )
    if polling.poll_interval_seconds < 0:
        raise InvalidConfiguration("polling.poll_interval_seconds must be >= 0")
    if polling.worker_threads < 0:
        raise InvalidConfiguration("polling.worker_threads must be >= 0")

    # Progress store configuration
    progress_data = _get_nested(data, "progress")
    progress = ProgressConfig(
        path=_validate_str(_get_nested(progress_data, "path"), "progress.path"),
        retained_batches=parse_int(
            _get_nested(progress_data, "retained_batches", required=False, default=100),
            "progress.retained_batches",
        ),
        vacuum_interval_batches=parse_int(
            _get_nested(
                progress_data, "vacuum_interval_batches", required=False, default=100
            ),
            "progress.vacuum_interval_batches",
        ),
    )
    if progress.retained_batches < 1:
        raise InvalidConfiguration("progress.retained_batches must be >= 1")
    if progress.vacuum_interval_batches < 1:
        raise InvalidConfiguration("progress.vacuum_interval_batches must be >= 1")

    # Output configuration
    output_data = _get_nested(data, "output")
    output = OutputConfig(
        directory=_validate_str(_get_nested(output_data, "directory"), "output.directory")
    )

    return Config(
        stream=stream,
        broker=broker,
        polling=polling,
        progress=progress,
        output=output,
    )
