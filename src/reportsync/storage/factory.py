from __future__ import annotations

from typing import TYPE_CHECKING

from .base import CredentialRepository, ReportSink, TenantRepository
from .elastic import ElasticCredentialRepository, ElasticReportStore, ElasticTenantRepository

if TYPE_CHECKING:
    from ..config import Settings


def create_credential_repository(settings: "Settings") -> CredentialRepository:
    return ElasticCredentialRepository(
        hosts=settings.elastic_hosts_list,
        username=settings.elastic_user,
        password=settings.elastic_password,
        index_prefix=settings.elastic_index_prefix,
        verify_certs=settings.elastic_verify_certs,
    )


def create_tenant_repository(settings: "Settings") -> TenantRepository:
    return ElasticTenantRepository(
        hosts=settings.elastic_hosts_list,
        username=settings.elastic_user,
        password=settings.elastic_password,
        index_prefix=settings.elastic_index_prefix,
        verify_certs=settings.elastic_verify_certs,
    )


def create_report_sink(settings: "Settings") -> ReportSink:
    return ElasticReportStore(
        hosts=settings.elastic_hosts_list,
        username=settings.elastic_user,
        password=settings.elastic_password,
        index_prefix=settings.elastic_index_prefix,
        verify_certs=settings.elastic_verify_certs,
    )
