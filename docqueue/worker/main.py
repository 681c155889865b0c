"""
Worker process.

Consumes the configured queue with the handler registry until SIGTERM or
SIGINT. Stopping cancels in-flight work; those items become claimable
again once their leases go stale.
"""

import asyncio
import logging
import signal

from prometheus_client import start_http_server

from docqueue.config import get_settings
from docqueue.db import close_db, get_engine, init_db
from docqueue.observability.logging import setup_logging
from docqueue.observability.metrics import setup_metrics
from docqueue.observability.tracing import instrument_sqlalchemy, setup_tracing
from docqueue.queue.engine import QueueEngine
from docqueue.worker.handlers import dispatch, list_handlers

logger = logging.getLogger(__name__)


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()

    setup_logging()
    setup_metrics()
    start_http_server(settings.prometheus_port)
    if settings.otel_enabled:
        setup_tracing()

    await init_db()
    if settings.otel_enabled:
        instrument_sqlalchemy(get_engine().sync_engine)

    engine = await QueueEngine.create(settings=settings)
    await engine.start_consumer(dispatch, settings.queue_channel_count)

    logger.info(
        "Worker running",
        extra={"queue": engine.name, "handlers": list_handlers()},
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        await engine.shutdown()
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
