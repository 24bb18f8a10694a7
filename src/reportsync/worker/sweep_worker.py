"""Daily sweep worker.

Sleeps until ``SWEEP_SCHEDULE_TIME`` in ``SWEEP_TIMEZONE``, runs one
scheduled sweep over every eligible site, logs the summary and goes back
to sleep.  ``SIGINT``/``SIGTERM`` end the loop; a sweep in progress is
cancelled together with its fetch tasks and no summary is recorded.

Run with ``python -m reportsync.worker.sweep_worker``.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime, timedelta, timezone, tzinfo

from ..config import get_settings, validate_settings
from ..services import build_services
from ..utils.datetime import utc_now
from .heartbeat import WorkerHeartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "sweep-worker"

_shutdown = asyncio.Event()


async def _sweep_until_shutdown(orchestrator):
    """Run one sweep; returns None if a shutdown signal cancelled it."""
    sweep = asyncio.create_task(orchestrator.run_scheduled_sweep())
    stop = asyncio.create_task(_shutdown.wait())
    done, _ = await asyncio.wait({sweep, stop}, return_when=asyncio.FIRST_COMPLETED)
    if sweep in done:
        stop.cancel()
        return sweep.result()
    sweep.cancel()
    await asyncio.gather(sweep, return_exceptions=True)
    logger.warning("%s: sweep cancelled by shutdown", WORKER_NAME)
    return None


def _handle_signal() -> None:
    logger.info("%s: shutdown signal received", WORKER_NAME)
    _shutdown.set()


def install_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except (NotImplementedError, RuntimeError, ValueError):
            try:
                signal.signal(sig, lambda *_: _handle_signal())
            except (ValueError, OSError):
                logger.warning("%s: unable to install handler for %s", WORKER_NAME, sig.name)


def seconds_until_next_run(now: datetime, hour: int, minute: int, tz: tzinfo) -> float:
    """Seconds from *now* to the next HH:MM wall-clock time in *tz*.

    A run scheduled for exactly *now* is pushed to the following day.
    """
    local_now = now.astimezone(tz)
    target = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= local_now:
        target = (target + timedelta(days=1)).replace(hour=hour, minute=minute)
    return (target.astimezone(timezone.utc) - now.astimezone(timezone.utc)).total_seconds()


async def sweep_worker_loop() -> None:
    global _shutdown
    _shutdown = asyncio.Event()
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    heartbeat = WorkerHeartbeat(settings, WORKER_NAME)

    try:
        validate_settings(settings)
    except ValueError as exc:
        logger.error("%s: invalid configuration: %s. Exiting.", WORKER_NAME, exc)
        heartbeat.update("disabled", {"reason": str(exc)})
        return

    hour, minute = settings.sweep_schedule_hour_minute
    tz = settings.sweep_zone
    services = build_services(settings)
    install_signal_handlers(asyncio.get_running_loop())
    logger.info(
        "%s started, daily at %02d:%02d %s", WORKER_NAME, hour, minute, settings.sweep_timezone
    )

    try:
        while not _shutdown.is_set():
            delay = seconds_until_next_run(utc_now(), hour, minute, tz)
            heartbeat.update("sleeping", {"next_run_in_seconds": int(delay)})
            try:
                await asyncio.wait_for(_shutdown.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass

            heartbeat.update("running", {"cycle_started_at": utc_now().isoformat()})
            try:
                summary = await _sweep_until_shutdown(services.orchestrator)
            except Exception as exc:
                logger.exception("%s: sweep failed", WORKER_NAME)
                heartbeat.update("error", {"error": str(exc)[:200]})
                continue
            if summary is None:
                break

            for tenant_id, reasons in list(summary.failures.items())[:5]:
                logger.warning("%s: site %s failed: %s", WORKER_NAME, tenant_id, "; ".join(reasons))
            heartbeat.record_run(summary, seconds_until_next_run(utc_now(), hour, minute, tz))
    finally:
        await services.aclose()

    logger.info("%s stopped", WORKER_NAME)
    heartbeat.update("stopped")


def main() -> None:
    asyncio.run(sweep_worker_loop())


if __name__ == "__main__":
    main()
