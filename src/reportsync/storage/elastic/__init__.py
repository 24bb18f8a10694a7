"""Elasticsearch-backed credential, site and report-row stores."""

from ._credential_store import ElasticCredentialRepository
from ._helpers import _ElasticBase, _ElasticIndices
from ._report_store import ElasticReportStore
from ._tenant_store import ElasticTenantRepository

__all__ = [
    "ElasticCredentialRepository",
    "ElasticReportStore",
    "ElasticTenantRepository",
    "_ElasticIndices",
    "_ElasticBase",
]
