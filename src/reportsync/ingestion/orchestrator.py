"""Multi-tenant ingestion orchestrator.

Fans out one task per (tenant, source, window), runs them with bounded
parallelism under an overall deadline, and turns every task's result
into a :class:`~reportsync.schemas.TaskOutcome`.  This is the only layer
that catches errors and carries on: a failing task never propagates to
its siblings or to the run as a whole.

Each task:

1. obtains a valid bearer token from the :class:`TokenManager`
2. calls the source fetcher for the tenant's resource and window
3. hands the rows to the report sink
4. records success/error status on the tenant document

``ProviderUnavailableError`` is retried within the run with exponential
backoff up to ``max_attempts``; every other error fails the task
immediately.  When the deadline passes, unfinished tasks are cancelled
and reported as timeouts; finished results are kept.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from ..connectors import SourceFetcher
from ..credentials import TokenManager
from ..errors import (
    IntegrityError,
    NoCredentialError,
    PermissionDeniedError,
    ReportSyncError,
    SourceNotConfiguredError,
    TenantNotFoundError,
)
from ..schemas import (
    DateWindow,
    ManualRunResponse,
    RunSummary,
    SourceKind,
    TaskOutcome,
    Tenant,
)
from ..storage.base import ReportSink, TenantRepository
from ..utils.datetime import utc_now
from .windows import trailing_window

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestionTask:
    tenant: Tenant
    source: SourceKind
    window: DateWindow


class IngestionOrchestrator:
    def __init__(
        self,
        tenants: TenantRepository,
        tokens: TokenManager,
        fetchers: Mapping[SourceKind, SourceFetcher],
        sink: ReportSink,
        *,
        concurrency: int = 8,
        max_attempts: int = 3,
        retry_base_seconds: float = 1.0,
        sweep_deadline_seconds: float = 480.0,
        manual_deadline_seconds: float = 60.0,
        lookback_days: int = 30,
        search_lag_days: int = 3,
        tz: Optional[tzinfo] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.tenants = tenants
        self.tokens = tokens
        self.fetchers = dict(fetchers)
        self.sink = sink
        self.concurrency = max(int(concurrency), 1)
        self.max_attempts = max(int(max_attempts), 1)
        self.retry_base_seconds = max(float(retry_base_seconds), 0.0)
        self.sweep_deadline_seconds = sweep_deadline_seconds
        self.manual_deadline_seconds = manual_deadline_seconds
        self.lookback_days = lookback_days
        self.search_lag_days = search_lag_days
        self.tz = tz
        self._clock = clock
        self._sleep = sleep

    # ── Task construction ───────────────────────────────────

    def window_for(self, source: SourceKind, trigger: datetime) -> DateWindow:
        lag = self.search_lag_days if source is SourceKind.SEARCH else 0
        return trailing_window(trigger, days=self.lookback_days, lag_days=lag, tz=self.tz)

    def build_sweep_tasks(self, tenant: Tenant, trigger: datetime) -> List[IngestionTask]:
        tasks = []
        for source in tenant.configured_sources:
            if not tenant.is_credentialed(source):
                logger.info(
                    "Skipping %s for site %s: no OAuth token linked",
                    source.label,
                    tenant.id,
                )
                continue
            tasks.append(IngestionTask(tenant, source, self.window_for(source, trigger)))
        return tasks

    # ── Single task ─────────────────────────────────────────

    async def _attempt(self, task: IngestionTask) -> int:
        tenant, source = task.tenant, task.source
        resource = tenant.resource_for(source)
        if not resource:
            raise SourceNotConfiguredError(f"{source.label} is not configured for site {tenant.id}")
        token_id = tenant.token_id_for(source)
        if not token_id:
            raise NoCredentialError(f"{tenant.id}/{source.label}")
        fetcher = self.fetchers.get(source)
        if fetcher is None:
            raise SourceNotConfiguredError(f"no fetcher registered for {source.label}")

        token = await self.tokens.get_valid_token(token_id)
        report = await fetcher.fetch(resource, task.window, token.access_token)
        return await asyncio.to_thread(
            self.sink.write_report, tenant.id, source, task.window, report
        )

    async def run_task(self, task: IngestionTask) -> TaskOutcome:
        """Run one task to an outcome; only cancellation escapes."""
        tenant_id, source = task.tenant.id, task.source
        attempt = 0
        while True:
            attempt += 1
            try:
                rows = await self._attempt(task)
            except ReportSyncError as exc:
                if exc.retryable and attempt < self.max_attempts:
                    delay = self.retry_base_seconds * (2 ** (attempt - 1))
                    logger.warning(
                        "Transient failure for site=%s source=%s (attempt %d/%d), retrying in %.1fs: %s",
                        tenant_id,
                        source.label,
                        attempt,
                        self.max_attempts,
                        delay,
                        exc,
                    )
                    await self._sleep(delay)
                    continue
                if isinstance(exc, IntegrityError):
                    logger.critical(
                        "Credential integrity failure for site=%s source=%s",
                        tenant_id,
                        source.label,
                    )
                else:
                    logger.warning(
                        "Ingestion failed for site=%s source=%s: %s: %s",
                        tenant_id,
                        source.label,
                        exc.kind,
                        exc,
                    )
                return await self._fail(task, attempt, str(exc), exc.kind)
            except Exception as exc:
                logger.exception(
                    "Unexpected ingestion error for site=%s source=%s",
                    tenant_id,
                    source.label,
                )
                return await self._fail(task, attempt, str(exc), type(exc).__name__)

            await self._record_status(tenant_id, source, "success", None)
            logger.info(
                "Ingested %d rows for site=%s source=%s window=%s",
                rows,
                tenant_id,
                source.label,
                task.window.key,
            )
            return TaskOutcome(
                tenant_id=tenant_id,
                source=source,
                window=task.window,
                ok=True,
                row_count=rows,
                attempts=attempt,
            )

    async def _fail(
        self, task: IngestionTask, attempts: int, error: str, kind: str
    ) -> TaskOutcome:
        await self._record_status(task.tenant.id, task.source, "error", error)
        return TaskOutcome(
            tenant_id=task.tenant.id,
            source=task.source,
            window=task.window,
            ok=False,
            attempts=attempts,
            error=error,
            error_kind=kind,
        )

    async def _record_status(
        self, tenant_id: str, source: SourceKind, status: str, error: Optional[str]
    ) -> None:
        try:
            await asyncio.to_thread(
                self.tenants.record_source_status, tenant_id, source, status, error
            )
        except Exception:
            logger.warning(
                "Could not record %s status for site=%s source=%s",
                status,
                tenant_id,
                source.label,
                exc_info=True,
            )

    # ── Fan-out ─────────────────────────────────────────────

    async def run_tasks(
        self, tasks: Sequence[IngestionTask], deadline_seconds: float
    ) -> List[TaskOutcome]:
        """Run *tasks* with bounded parallelism; one outcome per task, in order."""
        if not tasks:
            return []
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _guarded(task: IngestionTask) -> TaskOutcome:
            async with semaphore:
                return await self.run_task(task)

        running = [asyncio.create_task(_guarded(task)) for task in tasks]
        try:
            _, pending = await asyncio.wait(running, timeout=deadline_seconds)
        except asyncio.CancelledError:
            for future in running:
                future.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Deadline of %.0fs exceeded; %d of %d task(s) cancelled",
                deadline_seconds,
                len(pending),
                len(tasks),
            )

        outcomes: List[TaskOutcome] = []
        for task, future in zip(tasks, running):
            if future in pending or future.cancelled():
                outcomes.append(
                    TaskOutcome(
                        tenant_id=task.tenant.id,
                        source=task.source,
                        window=task.window,
                        ok=False,
                        error=f"timed out after {deadline_seconds:.0f}s",
                        error_kind="Timeout",
                        timed_out=True,
                    )
                )
            else:
                outcomes.append(future.result())
        return outcomes

    # ── Entry points ────────────────────────────────────────

    async def run_scheduled_sweep(self, trigger: Optional[datetime] = None) -> RunSummary:
        trigger = trigger or self._clock()
        summary = RunSummary(
            run_id=f"sweep-{trigger.isoformat()}",
            trigger="scheduled",
            started_at=trigger,
        )
        tenants = await asyncio.to_thread(self.tenants.list_eligible)
        tasks = [
            task for tenant in tenants for task in self.build_sweep_tasks(tenant, trigger)
        ]
        logger.info(
            "Sweep %s: %d eligible site(s), %d task(s)",
            summary.run_id,
            len(tenants),
            len(tasks),
        )
        for outcome in await self.run_tasks(tasks, self.sweep_deadline_seconds):
            summary.add(outcome)
        summary.finished_at = self._clock()
        logger.info(
            "Sweep %s finished: succeeded=%d failed=%d",
            summary.run_id,
            summary.succeeded,
            summary.failed,
        )
        return summary

    async def run_windows(
        self,
        tenant: Tenant,
        windows: Sequence[DateWindow],
        *,
        trigger: str,
        deadline_seconds: Optional[float] = None,
    ) -> RunSummary:
        """One task per (window, configured source) for a single tenant."""
        started = self._clock()
        summary = RunSummary(
            run_id=f"{trigger}-{tenant.id}-{started.isoformat()}",
            trigger=trigger,
            started_at=started,
        )
        tasks = [
            IngestionTask(tenant, source, window)
            for window in windows
            for source in tenant.configured_sources
        ]
        deadline = deadline_seconds or self.sweep_deadline_seconds
        for outcome in await self.run_tasks(tasks, deadline):
            summary.add(outcome)
        summary.finished_at = self._clock()
        return summary

    async def run_manual(
        self,
        tenant_id: str,
        requester_id: Optional[str] = None,
        trigger: Optional[datetime] = None,
    ) -> ManualRunResponse:
        """On-demand run for one tenant; per-source results, never raises for a source."""
        tenant = await asyncio.to_thread(self.tenants.get, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        if requester_id is not None and tenant.owner_id != requester_id:
            raise PermissionDeniedError("Caller does not own this site")

        trigger = trigger or self._clock()
        tasks = [
            IngestionTask(tenant, source, self.window_for(source, trigger))
            for source in tenant.configured_sources
        ]
        outcomes = await self.run_tasks(tasks, self.manual_deadline_seconds)

        results: Dict[str, Dict[str, object]] = {
            source.result_key: {"error": f"{source.label} is not configured for this site"}
            for source in SourceKind
        }
        for outcome in outcomes:
            results[outcome.source.result_key] = outcome.as_result()
        success = bool(outcomes) and all(outcome.ok for outcome in outcomes)
        logger.info(
            "Manual run for site=%s: %s",
            tenant_id,
            ", ".join(f"{o.source.label}={'ok' if o.ok else 'error'}" for o in outcomes)
            or "no sources configured",
        )
        return ManualRunResponse(success=success, results=results)
