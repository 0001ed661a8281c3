"""
APScheduler-based background jobs for the learning assistant.

Two interval jobs run on the asyncio scheduler, next to FastAPI's event loop:
- progress retry: re-sends Progress Store deliveries that failed earlier
- idle sweep: ends sessions that have been idle for longer than `sessions.idle_timeout_s`

The work itself lives in `services.progress_sync` and `services.session_manager`; this
module only wires scheduling and lifecycle (start/stop) to application startup and
shutdown. Jobs log a one-line summary and never raise into the scheduler.
"""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from learnflow.config.logging_config import get_logger

logger = get_logger(__name__)


async def run_progress_retry_job(runtime) -> None:
    """Retry pending Progress Store deliveries once; never raise."""
    try:
        pending = runtime.forwarder.pending_count
        if pending:
            delivered = await runtime.forwarder.retry_pending()
            logger.info("progress_retry summary: pending=%s delivered=%s", pending, delivered)
    except Exception as exc:
        logger.warning("progress_retry failed: %s", exc)


async def run_idle_sweep_job(runtime) -> None:
    """End idle sessions; never raise."""
    try:
        expired = await runtime.sessions.expire_idle()
        if expired:
            logger.info("idle_sweep summary: expired=%s active=%s", len(expired), runtime.sessions.active_count)
    except Exception as exc:
        logger.warning("idle_sweep failed: %s", exc)


def start_background_scheduler(app, runtime) -> AsyncIOScheduler:
    """
    Start the background scheduler and store it on the app state.

    Must be called from inside the running event loop (the FastAPI lifespan). The scheduler
    instance is attached to `app.state.scheduler` for later shutdown.
    """
    config = runtime.config
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_progress_retry_job,
        trigger=IntervalTrigger(seconds=int(config["progress"].get("retry_interval_s", 30))),
        args=[runtime],
        id="progress_retry",
        coalesce=True,
        max_instances=1,
    )
    scheduler.add_job(
        run_idle_sweep_job,
        trigger=IntervalTrigger(seconds=int(config["sessions"].get("sweep_interval_s", 60))),
        args=[runtime],
        id="idle_session_sweep",
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    setattr(app.state, "scheduler", scheduler)
    logger.info("Background scheduler started with %d job(s)", len(scheduler.get_jobs()))
    return scheduler


def shutdown_background_scheduler(app) -> None:
    """Stop the scheduler if it was started; shutdown errors are logged, not raised."""
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is None:
        return
    try:
        scheduler.shutdown(wait=False)
    except Exception as exc:
        logger.warning("Scheduler shutdown failed: %s", exc)
