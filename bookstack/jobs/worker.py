"""
arq worker

Runs batch jobs enqueued by ArqJobRunner:

    arq bookstack.jobs.worker.WorkerSettings

The worker builds its own pipeline on startup (its own engine, HTTP clients
and circuit breakers) and closes it on shutdown.
"""
import logging
from typing import Any, Dict

from bookstack.core.config import settings
from bookstack.core.logging_config import configure_logging
from bookstack.jobs.runner import InProcessJobRunner, parse_redis_url
from bookstack.services.pipeline import build_pipeline

logger = logging.getLogger(__name__)


async def startup(ctx: Dict[str, Any]) -> None:
    configure_logging(settings.LOG_LEVEL)
    # Jobs already run inside the worker; nothing is re-queued from here
    ctx["pipeline"] = await build_pipeline(settings, runner=InProcessJobRunner())
    logger.info("[Worker] Started")


async def shutdown(ctx: Dict[str, Any]) -> None:
    pipeline = ctx.get("pipeline")
    if pipeline is not None:
        await pipeline.close()
    logger.info("[Worker] Stopped")


async def process_batch_job(ctx: Dict[str, Any], batch_id: str) -> Dict[str, Any]:
    """
    Background job for one uploaded batch.

    Args:
        ctx: arq job context (holds the pipeline built in startup)
        batch_id: Batch to process

    Returns:
        Dict with the batch's terminal counts
    """
    pipeline = ctx["pipeline"]
    logger.info(f"[Worker] process_batch_job {batch_id}")
    await pipeline.coordinator.run_batch(batch_id)
    report = await pipeline.status.get_status(batch_id)
    return {
        "batch_id": batch_id,
        "status": report.status.value,
        "successful_records": report.successful_records,
        "failed_records": report.failed_records,
    }


class WorkerSettings:
    """arq worker configuration."""

    functions = [process_batch_job]
    on_startup = startup
    on_shutdown = shutdown

    redis_settings = parse_redis_url(settings.ARQ_REDIS_URL)

    max_jobs = settings.ARQ_MAX_JOBS
    job_timeout = settings.ARQ_JOB_TIMEOUT_SECONDS
    keep_result = 3600

    # Records are claimed once; a re-run would find nothing pending
    max_tries = 1
