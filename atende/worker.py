"""Inbound queue consumer and the inactivity monitor loop.

Both loops run inside the API process (see ``atende.main``) or standalone
via ``atende-worker``.
"""

import asyncio
import time
from typing import Optional

from atende.config import get_settings
from atende.logging_config import get_logger, setup_logging
from atende.runtime import Runtime, build_runtime
from atende.schemas.job import InboundJobPayload
from atende.services.message_pipeline import MessagePipeline
from atende.services.queue_service import claim_jobs, complete_job, fail_job, requeue_stale_jobs
from atende.services.timeout_monitor import ConversationTimeoutMonitor

worker_logger = get_logger("queue_worker")
monitor_logger = get_logger("timeout_worker")

STALE_SWEEP_SECONDS = 60.0


async def process_next_job(runtime: Runtime, pipeline: Optional[MessagePipeline] = None) -> Optional[str]:
    """Claim and process at most one job. Returns its final status, or None if idle."""
    settings = runtime.settings
    pipeline = pipeline or MessagePipeline(runtime)
    db = runtime.session_factory()
    try:
        jobs = claim_jobs(db, limit=1)
        if not jobs:
            return None
        job = jobs[0]
        job_id, attempts = job.id, job.attempts
        try:
            payload = InboundJobPayload.model_validate(job.payload)
            outcome = await pipeline.process(db, payload, job_id=job_id)
        except Exception as exc:
            db.rollback()
            worker_logger.error(
                "Inbound job failed",
                exc_info=True,
                extra={"context": {"job_id": str(job_id), "attempt": attempts, "error": str(exc)}},
            )
            return fail_job(
                db,
                job_id,
                f"{exc.__class__.__name__}: {exc}",
                max_attempts=settings.queue_max_attempts,
                backoff_seconds=settings.queue_retry_backoff_seconds,
            )
        complete_job(db, job_id)
        worker_logger.info(
            "Inbound job processed",
            extra={
                "context": {
                    "job_id": str(job_id),
                    "conversation_id": str(outcome.conversation_id),
                    "replied": outcome.replied,
                    "skipped": outcome.skipped,
                    "functions": outcome.functions_called,
                }
            },
        )
        return "DONE"
    finally:
        db.close()


async def queue_worker_loop(runtime: Runtime) -> None:
    pipeline = MessagePipeline(runtime)
    last_sweep = 0.0
    while True:
        try:
            settings = runtime.settings
            if time.monotonic() - last_sweep >= STALE_SWEEP_SECONDS:
                db = runtime.session_factory()
                try:
                    requeue_stale_jobs(db, visibility_timeout_seconds=settings.queue_visibility_timeout_seconds)
                finally:
                    db.close()
                last_sweep = time.monotonic()

            status = await process_next_job(runtime, pipeline)
            if status is None:
                await asyncio.sleep(max(settings.worker_interval_seconds, 0.1))
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error("Queue worker loop failed", extra={"context": {"error": str(exc)}})
            await asyncio.sleep(1.0)


async def timeout_monitor_loop(runtime: Runtime) -> None:
    monitor = ConversationTimeoutMonitor(runtime)
    while True:
        try:
            await asyncio.sleep(max(runtime.settings.timeout_monitor_interval_seconds, 1.0))
            db = runtime.session_factory()
            try:
                await monitor.run(db)
            finally:
                db.close()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            monitor_logger.error("Timeout monitor loop failed", extra={"context": {"error": str(exc)}})


async def _run_standalone() -> None:
    settings = get_settings()
    runtime = build_runtime(settings)
    loops = [asyncio.create_task(queue_worker_loop(runtime), name="queue-worker")]
    if settings.timeout_monitor_enabled:
        loops.append(asyncio.create_task(timeout_monitor_loop(runtime), name="timeout-monitor"))
    worker_logger.info("Standalone worker started")
    try:
        await asyncio.gather(*loops)
    finally:
        for task in loops:
            task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        await runtime.close()


def main() -> None:
    setup_logging(get_settings().log_level)
    try:
        asyncio.run(_run_standalone())
    except KeyboardInterrupt:
        worker_logger.info("Standalone worker stopped")


if __name__ == "__main__":
    main()
