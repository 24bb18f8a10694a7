from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SourceKind(str, Enum):
    ANALYTICS = "A"
    SEARCH = "B"

    @property
    def label(self) -> str:
        return "analytics" if self is SourceKind.ANALYTICS else "search"

    @property
    def result_key(self) -> str:
        return "sourceA" if self is SourceKind.ANALYTICS else "sourceB"


class Tenant(BaseModel):
    """An onboarded site whose analytics data is ingested."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = Field(default="", alias="siteName")
    owner_id: str = Field(alias="userId")
    setup_completed: bool = Field(default=False, alias="setupCompleted")
    analytics_property_id: Optional[str] = Field(default=None, alias="ga4PropertyId")
    analytics_token_id: Optional[str] = Field(default=None, alias="ga4OauthTokenId")
    search_site_url: Optional[str] = Field(default=None, alias="gscSiteUrl")
    search_token_id: Optional[str] = Field(default=None, alias="gscOauthTokenId")

    def resource_for(self, source: SourceKind) -> Optional[str]:
        if source is SourceKind.ANALYTICS:
            return self.analytics_property_id or None
        return self.search_site_url or None

    def token_id_for(self, source: SourceKind) -> Optional[str]:
        if source is SourceKind.ANALYTICS:
            return self.analytics_token_id or None
        return self.search_token_id or None

    def is_configured(self, source: SourceKind) -> bool:
        return bool(self.resource_for(source))

    def is_credentialed(self, source: SourceKind) -> bool:
        return self.is_configured(source) and bool(self.token_id_for(source))

    @property
    def configured_sources(self) -> List[SourceKind]:
        return [kind for kind in SourceKind if self.is_configured(kind)]

    @property
    def is_eligible(self) -> bool:
        return self.setup_completed and bool(self.configured_sources)


class TokenSet(BaseModel):
    """Decrypted view of a credential record."""

    access_token: str
    refresh_token: str = ""
    expires_at: int  # epoch milliseconds


class TokenGrant(BaseModel):
    """Token endpoint response (refresh or authorization-code exchange)."""

    access_token: str
    expires_in: int = Field(ge=0)
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: str = "Bearer"


class ValidToken(BaseModel):
    access_token: str
    expires_at: int


class DateWindow(BaseModel):
    """Closed date range ``[start, end]``."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateWindow":
        if self.end < self.start:
            raise ValueError("window end precedes start")
        return self

    @property
    def key(self) -> str:
        return f"{self.start.isoformat()}_{self.end.isoformat()}"


class ReportRow(BaseModel):
    dimension_values: List[str] = Field(default_factory=list)
    metric_values: List[float] = Field(default_factory=list)


class SourceReport(BaseModel):
    """Tenant-agnostic rows returned by a source fetcher."""

    source: SourceKind
    window: DateWindow
    dimension_headers: List[str] = Field(default_factory=list)
    metric_headers: List[str] = Field(default_factory=list)
    rows: List[ReportRow] = Field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


class TaskOutcome(BaseModel):
    tenant_id: str
    source: SourceKind
    window: DateWindow
    ok: bool
    row_count: int = 0
    attempts: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    timed_out: bool = False

    def as_result(self) -> Dict[str, Any]:
        if self.ok:
            return {
                "success": True,
                "rowCount": self.row_count,
                "period": {
                    "startDate": self.window.start.isoformat(),
                    "endDate": self.window.end.isoformat(),
                },
            }
        return {"error": self.error or "unknown error", "kind": self.error_kind}


class RunSummary(BaseModel):
    run_id: str
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    succeeded: int = 0
    failed: int = 0
    failures: Dict[str, List[str]] = Field(default_factory=dict)
    outcomes: List[TaskOutcome] = Field(default_factory=list)

    def add(self, outcome: TaskOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.ok:
            self.succeeded += 1
            return
        self.failed += 1
        reason = f"{outcome.source.label}: {outcome.error}"
        self.failures.setdefault(outcome.tenant_id, []).append(reason)


# ── HTTP request/response models ─────────────────────────────


class ManualRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(alias="tenantId", min_length=1)


class ManualRunResponse(BaseModel):
    success: bool
    results: Dict[str, Dict[str, Any]]


class CredentialRefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token_id: str = Field(alias="tokenId", min_length=1)
    type: SourceKind


class CredentialRefreshResponse(BaseModel):
    success: bool
    message: str


class SiteCreatedEvent(BaseModel):
    before: Optional[Tenant] = None
    after: Tenant

    @property
    def completes_setup(self) -> bool:
        was_completed = bool(self.before and self.before.setup_completed)
        return not was_completed and self.after.setup_completed


class SiteCreatedResponse(BaseModel):
    accepted: bool = True
    backfill_scheduled: bool = Field(default=False, serialization_alias="backfillScheduled")
    task_id: Optional[str] = Field(default=None, serialization_alias="taskId")


class CredentialExchangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token_id: str = Field(alias="tokenId", min_length=1)
    type: SourceKind
    code: str = Field(min_length=1)
    redirect_uri: str = Field(alias="redirectUri", min_length=1)


class CredentialExchangeResponse(BaseModel):
    success: bool = True
    token_id: str = Field(serialization_alias="tokenId")
    expires_at: int = Field(serialization_alias="expiresAt")


class CredentialStatusResponse(BaseModel):
    token_id: str = Field(serialization_alias="tokenId")
    valid: bool
