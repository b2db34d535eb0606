"""Main entry point for the worker process."""

import asyncio
import signal
from typing import List, Optional

import structlog

from dispatch_core.broker import RedisBroker
from dispatch_core.retry import RetryPolicy
from dispatch_core.utils.logging import setup_logging
from .config.settings import WorkerConfig, get_config
from .exceptions import UnknownQueueHandler
from .services.handler_service import HandlerRegistry
from .services.worker_pool import WorkerPool

logger = structlog.get_logger(__name__)

# Connection attempts made before giving up at startup
STARTUP_RETRY = RetryPolicy(max_attempts=10, base_delay_ms=1000, max_delay_ms=30000)


def build_pools(
    config: WorkerConfig,
    broker: RedisBroker,
    registry: HandlerRegistry,
) -> List[WorkerPool]:
    """One pool per configured queue that has a handler."""
    pools = []
    for queue_name in config.queues:
        try:
            handler = registry.get_handler(queue_name)
        except UnknownQueueHandler as e:
            logger.error("queue_skipped", queue=queue_name, error=str(e))
            continue

        pools.append(WorkerPool(
            broker,
            queue_name,
            handler,
            concurrency=config.concurrency,
            lease_ms=config.lease_ms,
            poll_interval=config.poll_interval_ms / 1000,
            maintenance_interval=config.maintenance_interval_ms / 1000,
            handler_timeout_ms=config.job_timeout_ms,
            retry_policy=config.retry_policy,
        ))
    return pools


async def main(config: Optional[WorkerConfig] = None, stop_event: Optional[asyncio.Event] = None):
    """Run worker pools until SIGINT/SIGTERM or ``stop_event`` is set."""
    config = config or get_config()
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread
            pass

    client = RedisBroker.create_client(config.redis_host, config.redis_port)
    broker = RedisBroker(client, prefix=config.queue_prefix)
    pools: List[WorkerPool] = []

    try:
        await STARTUP_RETRY.execute_with_retry(broker.ping, "broker_ping")

        registry = HandlerRegistry()
        registry.load_handlers()
        pools = build_pools(config, broker, registry)
        if not pools:
            raise RuntimeError(f"No handlers registered for queues {config.queues}")

        for pool in pools:
            await pool.start()
        logger.info("worker_started", queues=[pool.queue_name for pool in pools], concurrency=config.concurrency)

        await stop_event.wait()
        logger.info("worker_shutdown_requested")

    finally:
        await asyncio.gather(
            *(pool.stop(drain_timeout=config.drain_timeout_ms / 1000) for pool in pools),
            return_exceptions=True
        )
        await broker.close()
        logger.info("worker_stopped")


def run():
    """Console entry point."""
    config = get_config()
    setup_logging(config.log_level, service="dispatch_worker")
    asyncio.run(main(config))


if __name__ == "__main__":
    run()
