from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import List

import pytest

from reportsync.credentials import CredentialCipher, TokenManager
from reportsync.errors import (
    PermissionDeniedError,
    ProviderUnavailableError,
    SourceRequestError,
    TenantNotFoundError,
)
from reportsync.ingestion import IngestionOrchestrator
from reportsync.schemas import SourceKind
from tests.fakes import FakeFetcher, FakeProvider, make_tenant
from tests.in_memory_stores import (
    InMemoryCredentialRepository,
    InMemoryReportSink,
    InMemoryTenantRepository,
)

NOW_MS = 1_750_000_000_000
TRIGGER = datetime(2025, 6, 15, 18, 0, tzinfo=timezone.utc)
CIPHER = CredentialCipher("orchestrator-test-secret")


def _record(refresh: str, expires_at: int) -> dict:
    return CIPHER.encrypt_tokens(f"stored-{refresh}", refresh, expires_at)


class Harness:
    def __init__(
        self,
        tenants,
        records,
        *,
        revoked=None,
        analytics_failures=None,
        search_failures=None,
        **kwargs,
    ):
        self.tenants = InMemoryTenantRepository(tenants)
        self.credentials = InMemoryCredentialRepository(records)
        self.provider = FakeProvider(revoked)
        self.tokens = TokenManager(self.credentials, CIPHER, self.provider, clock=lambda: NOW_MS)
        self.analytics = FakeFetcher(SourceKind.ANALYTICS, analytics_failures)
        self.search = FakeFetcher(SourceKind.SEARCH, search_failures)
        self.sink = InMemoryReportSink()
        self.sleeps: List[float] = []

        async def _sleep(delay: float) -> None:
            self.sleeps.append(delay)

        self.orchestrator = IngestionOrchestrator(
            self.tenants,
            self.tokens,
            {SourceKind.ANALYTICS: self.analytics, SourceKind.SEARCH: self.search},
            self.sink,
            clock=lambda: TRIGGER,
            sleep=_sleep,
            **kwargs,
        )


def test_sweep_isolates_tenant_with_revoked_grant():
    harness = Harness(
        [make_tenant("t1"), make_tenant("t2"), make_tenant("t3")],
        {
            "tok-t1": _record("r1", NOW_MS + 3_600_000),
            "tok-t2": _record("revoked", NOW_MS - 1),
            "tok-t3": _record("r3", NOW_MS + 3_600_000),
        },
        revoked={"revoked"},
    )

    summary = asyncio.run(harness.orchestrator.run_scheduled_sweep(TRIGGER))

    assert summary.succeeded == 4
    assert summary.failed == 2
    assert set(summary.failures) == {"t2"}
    assert all("no longer valid" in reason for reason in summary.failures["t2"])
    failed = [o for o in summary.outcomes if not o.ok]
    assert {o.error_kind for o in failed} == {"CredentialExpiredError"}
    assert set(harness.provider.calls) == {"tok-t2"}
    assert harness.tenants.status[("t2", SourceKind.SEARCH)]["status"] == "error"
    assert harness.tenants.status[("t1", SourceKind.ANALYTICS)]["status"] == "success"


def test_sweep_windows_apply_search_lag():
    harness = Harness([make_tenant("t1")], {"tok-t1": _record("r1", NOW_MS + 3_600_000)})

    asyncio.run(harness.orchestrator.run_scheduled_sweep(TRIGGER))

    analytics_window = harness.analytics.calls[0][1]
    search_window = harness.search.calls[0][1]
    assert (analytics_window.end - search_window.end).days == 3
    assert (analytics_window.end - analytics_window.start).days + 1 == 30


def test_sweep_skips_ineligible_and_unlinked_sources():
    harness = Harness(
        [
            make_tenant("pending", setupCompleted=False),
            make_tenant("nosources", analytics=False, search=False),
            make_tenant("unlinked", gscOauthTokenId=None),
        ],
        {"tok-unlinked": _record("r", NOW_MS + 3_600_000)},
    )

    summary = asyncio.run(harness.orchestrator.run_scheduled_sweep(TRIGGER))

    assert summary.succeeded == 1
    assert summary.failed == 0
    assert harness.search.calls == []


def test_transient_failures_are_retried_with_backoff():
    harness = Harness(
        [make_tenant("t1", search=False)],
        {"tok-t1": _record("r1", NOW_MS + 3_600_000)},
        analytics_failures={
            "prop-t1": [ProviderUnavailableError("503"), ProviderUnavailableError("503")]
        },
        retry_base_seconds=0.5,
    )

    summary = asyncio.run(harness.orchestrator.run_scheduled_sweep(TRIGGER))

    assert summary.succeeded == 1
    assert summary.outcomes[0].attempts == 3
    assert harness.sleeps == [0.5, 1.0]


def test_retries_stop_at_max_attempts():
    harness = Harness(
        [make_tenant("t1", search=False)],
        {"tok-t1": _record("r1", NOW_MS + 3_600_000)},
        analytics_failures={"prop-t1": [ProviderUnavailableError("503")] * 5},
        max_attempts=2,
    )

    summary = asyncio.run(harness.orchestrator.run_scheduled_sweep(TRIGGER))

    outcome = summary.outcomes[0]
    assert not outcome.ok
    assert outcome.attempts == 2
    assert outcome.error_kind == "ProviderUnavailableError"


def test_permanent_failures_are_not_retried():
    harness = Harness(
        [make_tenant("t1", search=False)],
        {"tok-t1": _record("r1", NOW_MS + 3_600_000)},
        analytics_failures={"prop-t1": [SourceRequestError("not found", 404)]},
    )

    summary = asyncio.run(harness.orchestrator.run_scheduled_sweep(TRIGGER))

    assert summary.outcomes[0].attempts == 1
    assert harness.sleeps == []


def test_unexpected_exception_becomes_task_failure():
    harness = Harness(
        [make_tenant("t1")],
        {"tok-t1": _record("r1", NOW_MS + 3_600_000)},
        analytics_failures={"prop-t1": [RuntimeError("kaboom")]},
    )

    summary = asyncio.run(harness.orchestrator.run_scheduled_sweep(TRIGGER))

    assert summary.succeeded == 1
    assert summary.failures == {"t1": ["analytics: kaboom"]}


def test_deadline_cancels_unfinished_tasks_and_keeps_finished_ones():
    harness = Harness(
        [make_tenant("slow", search=False), make_tenant("fast", analytics=False)],
        {
            "tok-slow": _record("r", NOW_MS + 3_600_000),
            "tok-fast": _record("r", NOW_MS + 3_600_000),
        },
        sweep_deadline_seconds=0.2,
    )
    harness.analytics.delay = 5.0

    summary = asyncio.run(harness.orchestrator.run_scheduled_sweep(TRIGGER))

    by_tenant = {o.tenant_id: o for o in summary.outcomes}
    assert by_tenant["fast"].ok
    assert by_tenant["slow"].timed_out
    assert by_tenant["slow"].error_kind == "Timeout"


def test_cancelled_sweep_cancels_its_fetches():
    harness = Harness(
        [make_tenant("t1", search=False)], {"tok-t1": _record("r", NOW_MS + 3_600_000)}
    )
    harness.analytics.delay = 5.0

    async def _run():
        sweep = asyncio.create_task(harness.orchestrator.run_scheduled_sweep(TRIGGER))
        while not harness.analytics.calls:
            await asyncio.sleep(0.01)
        sweep.cancel()
        with pytest.raises(asyncio.CancelledError):
            await sweep
        return [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]

    leftovers = asyncio.run(_run())

    assert leftovers == []
    assert harness.sink.writes == 0


def test_concurrency_is_bounded():
    active = 0
    peak = 0

    class CountingFetcher(FakeFetcher):
        async def fetch(self, resource, window, bearer_token, query=None):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return await super().fetch(resource, window, bearer_token, query)

    tenants = [make_tenant(f"t{i}", search=False) for i in range(10)]
    records = {f"tok-t{i}": _record("r", NOW_MS + 3_600_000) for i in range(10)}
    harness = Harness(tenants, records, concurrency=3)
    harness.orchestrator.fetchers[SourceKind.ANALYTICS] = CountingFetcher(SourceKind.ANALYTICS)

    summary = asyncio.run(harness.orchestrator.run_scheduled_sweep(TRIGGER))

    assert summary.succeeded == 10
    assert peak <= 3


def test_empty_sweep_completes():
    harness = Harness([], {})
    summary = asyncio.run(harness.orchestrator.run_scheduled_sweep(TRIGGER))
    assert summary.succeeded == summary.failed == 0


# ── Manual runs ─────────────────────────────────────────────


def test_manual_run_reports_each_source_independently():
    harness = Harness(
        [make_tenant("t1")],
        {"tok-t1": _record("r1", NOW_MS + 3_600_000)},
        search_failures={"https://t1.example/": [SourceRequestError("forbidden", 403)]},
    )

    response = asyncio.run(harness.orchestrator.run_manual("t1", "owner-t1", TRIGGER))

    assert response.success is False
    assert response.results["sourceA"]["success"] is True
    assert response.results["sourceA"]["rowCount"] == 1
    assert set(response.results["sourceA"]["period"]) == {"startDate", "endDate"}
    assert response.results["sourceB"]["error"] == "forbidden"


def test_manual_run_marks_unconfigured_source():
    harness = Harness(
        [make_tenant("t1", search=False)], {"tok-t1": _record("r1", NOW_MS + 3_600_000)}
    )

    response = asyncio.run(harness.orchestrator.run_manual("t1", "owner-t1", TRIGGER))

    assert response.success is True
    assert "not configured" in response.results["sourceB"]["error"]


def test_manual_rerun_is_idempotent_and_does_not_refresh():
    records = {"tok-t1": _record("r1", NOW_MS + 3_600_000)}
    harness = Harness([make_tenant("t1")], records)

    first = asyncio.run(harness.orchestrator.run_manual("t1", "owner-t1", TRIGGER))
    second = asyncio.run(harness.orchestrator.run_manual("t1", "owner-t1", TRIGGER))

    assert first.model_dump() == second.model_dump()
    assert harness.provider.calls == []
    assert harness.credentials.puts == []
    assert harness.credentials.records == records
    assert len(harness.sink.reports) == 2
    assert harness.sink.writes == 4


def test_manual_run_unknown_tenant_and_wrong_owner():
    harness = Harness([make_tenant("t1")], {})

    with pytest.raises(TenantNotFoundError):
        asyncio.run(harness.orchestrator.run_manual("missing", "owner-t1"))
    with pytest.raises(PermissionDeniedError):
        asyncio.run(harness.orchestrator.run_manual("t1", "someone-else"))


def test_manual_run_missing_credential_is_reported_not_raised():
    harness = Harness([make_tenant("t1")], {})

    response = asyncio.run(harness.orchestrator.run_manual("t1", "owner-t1", TRIGGER))

    assert response.success is False
    assert response.results["sourceA"]["kind"] == "NoCredentialError"
    assert response.results["sourceB"]["kind"] == "NoCredentialError"
