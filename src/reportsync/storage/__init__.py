from .base import CredentialRepository, ReportSink, TenantRepository
from .elastic import ElasticCredentialRepository, ElasticReportStore, ElasticTenantRepository
from .factory import (
    create_credential_repository,
    create_report_sink,
    create_tenant_repository,
)

__all__ = [
    "CredentialRepository",
    "ReportSink",
    "TenantRepository",
    "ElasticCredentialRepository",
    "ElasticReportStore",
    "ElasticTenantRepository",
    "create_credential_repository",
    "create_report_sink",
    "create_tenant_repository",
]
