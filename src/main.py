"""Main entry point module.

Handles CLI arguments, wiring, the runner thread, signal handling, and
clean shutdown.
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from typing import Any, List

import config as config_module
import database
import kafka_client
from errors import CursorError, InvalidConfiguration
from executor import build_executor
from planner import BatchPlanner
from reader import KafkaBatchReader
from runner import StreamRunner
from sink import BatchSink
from source import EventStreamSource


logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def verify_broker_connectivity(
    kafka_client_module: Any,
    config: Any,
    timeout_seconds: int = 120,
    retry_interval: int = 10,
) -> Any:
    """Verify broker connectivity and the partition layout at startup.

    Args:
        kafka_client_module: The kafka_client module
        config: Configuration object
        timeout_seconds: Maximum time to wait for connectivity
        retry_interval: Seconds between retries

    Returns:
        The verified AdminClient for reuse

    Raises:
        RuntimeError: If connection cannot be established within timeout
        InvalidConfiguration: If the broker reports a different partition set
    """
    admin_client = kafka_client_module.build_admin_client(config)
    start_time = time.time()
    last_error = None

    while time.time() - start_time < timeout_seconds:
        try:
            partition_ids = kafka_client_module.get_partition_ids(
                admin_client, config.stream.name, config.broker.operation_timeout_seconds
            )
        except CursorError as e:
            last_error = e
            logger.warning(
                f"Broker connectivity check failed: {e}. Retrying in {retry_interval}s..."
            )
            time.sleep(retry_interval)
            continue

        logger.info(
            f"Broker connectivity verified: {config.stream.name} has "
            f"{len(partition_ids)} partition(s)"
        )
        check_partitions(partition_ids, config.stream.partitions)
        return admin_client

    raise RuntimeError(
        f"Failed to connect to broker after {timeout_seconds}s: {last_error}"
    )


def check_partitions(reported: List[int], configured: List[int]) -> None:
    """Fail if the broker's partitions differ from stream.partition_count.

    Raises:
        InvalidConfiguration: If the partition sets differ
    """
    if sorted(reported) != sorted(configured):
        raise InvalidConfiguration(
            f"stream.partition_count is {len(configured)} but the broker reports "
            f"partitions {sorted(reported)}"
        )


def build_source(cfg: Any, admin_client: Any, consumer: Any, executor: Any, initial: Any) -> EventStreamSource:
    """Wire the planner, broker collaborator and reader into a source."""
    broker = kafka_client.HighWaterMarkClient.from_config(admin_client, cfg)
    planner = BatchPlanner(
        cfg.stream.partitions,
        broker,
        max_rate_per_partition=cfg.stream.max_rate_per_partition,
        rate_overrides=cfg.stream.max_rate_overrides,
        executor=executor,
        initial=initial,
    )
    reader = KafkaBatchReader(
        consumer,
        cfg.stream.name,
        fail_on_data_loss=cfg.stream.fail_on_data_loss,
        receiver_timeout_seconds=cfg.broker.receiver_timeout_seconds,
    )
    return EventStreamSource(cfg.stream, planner, reader)


def run_until_failure(
    runner: StreamRunner, shutdown_event: threading.Event, failures: List[BaseException]
) -> None:
    """Run the runner; on a fatal error record it and trigger shutdown."""
    try:
        runner.run(shutdown_event)
    except CursorError as e:
        logger.error(f"Stopping query: {type(e).__name__}: {e}")
        failures.append(e)
    except Exception as e:
        logger.exception("Unhandled exception in runner, stopping query")
        failures.append(e)
    finally:
        shutdown_event.set()


def main() -> int:
    """Main entry point.

    Returns:
        Exit code (0 for clean shutdown, 1 on error)
    """
    # Parse CLI arguments
    parser = argparse.ArgumentParser(description="Event Hubs stream cursor")
    parser.add_argument(
        "--config", required=True, help="Path to configuration YAML file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--once", action="store_true", help="Run a single cycle and exit"
    )
    args = parser.parse_args()

    # Setup logging
    log_level = logging.DEBUG if args.debug else logging.INFO
    setup_logging(log_level)

    # Load configuration first
    try:
        cfg = config_module.load_config(args.config)
        logger.info(f"Configuration loaded from {args.config}")
    except InvalidConfiguration as e:
        print(f"ERROR: Invalid configuration: {e}", file=sys.stderr)
        return 1

    # Validate output directory exists
    if not os.path.isdir(cfg.output.directory):
        logger.error(
            f"Output directory does not exist: {cfg.output.directory!r} "
            f"(from output.directory)"
        )
        return 1

    # Initialize database and restore the last committed ledger
    try:
        init_conn = database.init_db(cfg.progress.path)
        try:
            initial = database.load_latest_ledger(init_conn, cfg.stream.name)
        finally:
            init_conn.close()
        logger.info(f"Progress database initialized at {cfg.progress.path}")
    except Exception as e:
        logger.error(f"Failed to initialize progress database: {e}")
        return 1

    if initial is not None:
        logger.info(f"Resuming {cfg.stream.name} from batch {initial.batch_id}")

    # Verify broker connectivity and get reusable client
    try:
        admin_client = verify_broker_connectivity(kafka_client, cfg)
    except (RuntimeError, InvalidConfiguration) as e:
        logger.error(str(e))
        return 1

    executor = build_executor(cfg.polling.worker_threads)
    try:
        source = build_source(
            cfg, admin_client, kafka_client.build_consumer(cfg), executor, initial
        )
    except InvalidConfiguration as e:
        logger.error(str(e))
        executor.shutdown(wait=False)
        return 1

    runner = StreamRunner(cfg, source, BatchSink(cfg.output.directory), cfg.progress.path)
    logger.info(
        f"Source {source.uid()} connected to partitions {source.connected_partitions()}"
    )

    if args.once:
        try:
            runner.run_cycle()
            return 0
        except CursorError as e:
            logger.error(f"Stopping query: {type(e).__name__}: {e}")
            return 1
        finally:
            source.stop()
            runner.close()
            executor.shutdown(wait=True)

    # Create shutdown event
    shutdown_event = threading.Event()
    failures: List[BaseException] = []

    # Setup signal handlers
    def handle_signal(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    runner_thread = threading.Thread(
        target=run_until_failure,
        args=(runner, shutdown_event, failures),
        name="runner",
        daemon=True,
    )
    runner_thread.start()
    logger.info(f"Started {runner_thread.name} thread")

    # Main thread heartbeat
    try:
        while not shutdown_event.wait(timeout=30):
            logger.debug(f"Heartbeat: committed batch {source.committed.batch_id}")
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        shutdown_event.set()

    # Shutdown
    logger.info("Shutting down...")
    runner_thread.join(timeout=max(10, cfg.broker.receiver_timeout_seconds))
    if runner_thread.is_alive():
        logger.warning(f"Thread {runner_thread.name} did not stop within timeout")
    else:
        runner.close()

    source.stop()
    executor.shutdown(wait=False)

    logger.info("Shutdown complete")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
