from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..schemas import DateWindow, SourceKind, SourceReport, Tenant


class CredentialRepository(ABC):
    """Credential records keyed by token id.

    Writes replace the whole document (last write wins); there are no
    multi-document transactions.
    """

    @abstractmethod
    def get(self, token_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def put(self, token_id: str, document: Dict[str, Any]) -> None:
        raise NotImplementedError


class TenantRepository(ABC):
    @abstractmethod
    def get(self, tenant_id: str) -> Optional[Tenant]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, tenant: Tenant) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_eligible(self) -> List[Tenant]:
        """Tenants with setup completed and at least one source configured."""
        raise NotImplementedError

    @abstractmethod
    def record_source_status(
        self,
        tenant_id: str,
        source: SourceKind,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class ReportSink(ABC):
    """Downstream persistence for fetched rows.

    Implementations must overwrite rather than duplicate when the same
    (tenant, source, window) is written again.
    """

    @abstractmethod
    def write_report(
        self,
        tenant_id: str,
        source: SourceKind,
        window: DateWindow,
        report: SourceReport,
    ) -> int:
        raise NotImplementedError
