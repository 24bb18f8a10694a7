"""Historical backfill for newly onboarded sites.

When a site's setup completes, the previous ``BACKFILL_MONTHS`` whole
calendar months are ingested with one task per (month, source).  The
backfill is best-effort enrichment: it runs in the background, its
failures are recorded per task, and it never blocks acknowledgment of
the site-created event.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, tzinfo
from typing import Callable, Optional

from ..schemas import RunSummary, SiteCreatedEvent, Tenant
from ..utils.datetime import utc_now
from .orchestrator import IngestionOrchestrator
from .tasks import TaskManager
from .windows import previous_month_windows, span

logger = logging.getLogger(__name__)


class BackfillTrigger:
    def __init__(
        self,
        orchestrator: IngestionOrchestrator,
        task_manager: TaskManager,
        *,
        months: int = 3,
        tz: Optional[tzinfo] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if months < 1:
            raise ValueError("months must be >= 1")
        self.orchestrator = orchestrator
        self.task_manager = task_manager
        self.months = months
        self.tz = tz
        self._clock = clock

    async def run_backfill(
        self,
        tenant: Tenant,
        months: Optional[int] = None,
        trigger: Optional[datetime] = None,
    ) -> RunSummary:
        months = months or self.months
        windows = previous_month_windows(trigger or self._clock(), months, self.tz)
        covered = span(windows)
        logger.info(
            "Backfill for site=%s: %d month(s) %s..%s across %d source(s)",
            tenant.id,
            months,
            covered.start.isoformat(),
            covered.end.isoformat(),
            len(tenant.configured_sources),
        )
        summary = await self.orchestrator.run_windows(tenant, windows, trigger="backfill")
        logger.info(
            "Backfill for site=%s finished: succeeded=%d failed=%d",
            tenant.id,
            summary.succeeded,
            summary.failed,
        )
        return summary

    async def handle_site_created(self, event: SiteCreatedEvent) -> Optional[str]:
        """Store the site record, then schedule a background backfill.

        Returns the backfill task id, or None when no backfill is due.
        """
        tenant = event.after
        await asyncio.to_thread(self.orchestrator.tenants.upsert, tenant)
        if not event.completes_setup:
            logger.info("Site %s: setup not newly completed, skipping backfill", tenant.id)
            return None
        if not tenant.configured_sources:
            logger.warning("Site %s: no data source configured, skipping backfill", tenant.id)
            return None

        record = self.task_manager.create(
            "backfill", {"tenant_id": tenant.id, "months": self.months}
        )

        async def _run() -> dict:
            summary = await self.run_backfill(tenant)
            return {"succeeded": summary.succeeded, "failed": summary.failed}

        self.task_manager.start_async(record.id, _run())
        return record.id
