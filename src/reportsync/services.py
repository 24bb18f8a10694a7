"""Construction of the long-lived service objects.

Everything here is built once per process by :func:`build_services` and
passed explicitly to the worker and API layers.  ``aclose`` releases
the shared HTTP connection pools.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from .config import Settings
from .connectors import AnalyticsFetcher, ReportQuery, SearchFetcher, create_http_client
from .credentials import CredentialCipher, OAuthProviderClient, TokenManager
from .ingestion import BackfillTrigger, IngestionOrchestrator, TaskManager
from .schemas import SourceKind
from .storage import (
    TenantRepository,
    create_credential_repository,
    create_report_sink,
    create_tenant_repository,
)


@dataclass
class Services:
    settings: Settings
    tenants: TenantRepository
    tokens: TokenManager
    provider: OAuthProviderClient
    orchestrator: IngestionOrchestrator
    backfill: BackfillTrigger
    task_manager: TaskManager
    http_client: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.task_manager.drain()
        await self.http_client.aclose()
        await self.provider.aclose()


def build_services(settings: Settings) -> Services:
    tenants = create_tenant_repository(settings)
    provider = OAuthProviderClient(
        client_id=settings.oauth_client_id,
        client_secret=settings.oauth_client_secret,
        token_url=settings.oauth_token_url,
        timeout=settings.provider_timeout_seconds,
    )
    tokens = TokenManager(
        create_credential_repository(settings),
        CredentialCipher(settings.encryption_key),
        provider,
        skew_seconds=settings.token_expiry_skew_seconds,
    )
    http_client = create_http_client(settings)
    fetchers = {
        SourceKind.ANALYTICS: AnalyticsFetcher(
            http_client,
            base_url=settings.analytics_api_base_url,
            default_query=ReportQuery(
                dimensions=settings.analytics_dimensions_list,
                metrics=settings.analytics_metrics_list,
            ),
        ),
        SourceKind.SEARCH: SearchFetcher(
            http_client,
            base_url=settings.search_api_base_url,
            default_query=ReportQuery(
                dimensions=settings.search_dimensions_list,
                row_limit=settings.search_row_limit,
            ),
        ),
    }
    tz = settings.sweep_zone
    orchestrator = IngestionOrchestrator(
        tenants,
        tokens,
        fetchers,
        create_report_sink(settings),
        concurrency=settings.ingest_concurrency,
        max_attempts=settings.ingest_max_attempts,
        retry_base_seconds=settings.ingest_retry_base_seconds,
        sweep_deadline_seconds=settings.sweep_deadline_seconds,
        manual_deadline_seconds=settings.manual_deadline_seconds,
        lookback_days=settings.sweep_lookback_days,
        search_lag_days=settings.search_data_lag_days,
        tz=tz,
    )
    task_manager = TaskManager()
    backfill = BackfillTrigger(
        orchestrator,
        task_manager,
        months=settings.backfill_months,
        tz=tz,
    )
    return Services(
        settings=settings,
        tenants=tenants,
        tokens=tokens,
        provider=provider,
        orchestrator=orchestrator,
        backfill=backfill,
        task_manager=task_manager,
        http_client=http_client,
    )
