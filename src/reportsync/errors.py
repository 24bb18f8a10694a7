"""Typed error taxonomy.

Credential and source components raise these; the ingestion
orchestrator is the only layer that catches them and converts them into
per-task failure entries.  ``retryable`` tells the orchestrator whether
another attempt within the same run may succeed.
"""

from __future__ import annotations

from typing import Optional


class ReportSyncError(Exception):
    retryable: bool = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class NoCredentialError(ReportSyncError):
    """The tenant never authorized this source (no credential record)."""

    def __init__(self, identity: str) -> None:
        super().__init__(f"OAuth token not found: {identity}")
        self.identity = identity


class CredentialExpiredError(ReportSyncError):
    """The refresh token was revoked or expired; re-authorization required."""

    def __init__(self, identity: str, detail: str = "") -> None:
        message = f"Refresh token for {identity} is no longer valid; reconnect required"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.identity = identity
        self.detail = detail


class ProviderUnavailableError(ReportSyncError):
    """Transient network / 429 / 5xx failure from an external provider."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IntegrityError(ReportSyncError):
    """Envelope failed authentication or is malformed."""


class ResponseParseError(ReportSyncError):
    """A provider response did not match the expected shape."""


class SourceRequestError(ReportSyncError):
    """Permanent request-shape error (bad property reference, forbidden, ...)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SourceNotConfiguredError(ReportSyncError):
    pass


class TenantNotFoundError(ReportSyncError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Site not found: {tenant_id}")
        self.tenant_id = tenant_id


class PermissionDeniedError(ReportSyncError):
    pass
