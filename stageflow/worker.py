"""
Background worker for delivering scheduled executions.

Usage:
    python -m stageflow.worker

The worker sweeps the schedule store every WORKER_POLL_INTERVAL seconds and
delivers due sends. Several workers may run side by side; each row is
claimed by exactly one of them.
"""

import asyncio
import logging
import os

from stageflow.core.config import settings
from stageflow.core.structured_logging import build_log_context
from stageflow.db.session import SessionLocal
from stageflow.services.dispatcher import Dispatcher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = settings.WORKER_POLL_INTERVAL


def _init_sentry() -> None:
    if settings.SENTRY_DSN and settings.ENV != "dev":
        import sentry_sdk

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENV,
            release=settings.VERSION,
            traces_sample_rate=0.0,
            send_default_pii=False,
        )


async def worker_loop(dispatcher: Dispatcher | None = None, max_sweeps: int | None = None) -> None:
    """Main worker loop - sweeps for and delivers due executions."""
    dispatcher = dispatcher or Dispatcher()
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s)",
        POLL_INTERVAL_SECONDS,
        dispatcher.batch_size,
    )
    if settings.email_dry_run:
        logger.warning("RESEND_API_KEY not set - emails will be logged but not sent")
    if settings.sms_dry_run:
        logger.warning("Twilio credentials not set - SMS will be logged but not sent")

    sweeps = 0
    while True:
        with SessionLocal() as db:
            await dispatcher.run_sweep(db)
        sweeps += 1
        if max_sweeps is not None and sweeps >= max_sweeps:
            return
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


def main() -> None:
    """Entry point for the worker."""
    _init_sentry()
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(
                request_id=os.getenv("WORKER_INSTANCE_ID"),
                route="worker",
                method="background",
            ),
        )
        raise


if __name__ == "__main__":
    main()
