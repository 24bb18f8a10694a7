"""Reporting-API fetchers.

Each fetcher turns ``(resource, window, bearer token, query)`` into a
tenant-agnostic :class:`~reportsync.schemas.SourceReport`.

Submodules:
- ``analytics``: source A, analytics property reports
- ``search``: source B, search performance data
"""

from ._shared import ReportQuery, SourceFetcher, create_http_client
from .analytics import AnalyticsFetcher
from .search import SearchFetcher

__all__ = [
    "AnalyticsFetcher",
    "ReportQuery",
    "SearchFetcher",
    "SourceFetcher",
    "create_http_client",
]
