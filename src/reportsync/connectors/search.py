"""Search-data API (source B) fetcher."""

from __future__ import annotations

import logging
from typing import List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

from ..errors import SourceRequestError
from ..schemas import DateWindow, ReportRow, SourceKind, SourceReport
from ._shared import ReportQuery, SourceFetcher, parse_payload, post_report

logger = logging.getLogger(__name__)

SEARCH_METRICS = ["clicks", "impressions", "ctr", "position"]


class _SearchRow(BaseModel):
    keys: List[str] = Field(default_factory=list)
    clicks: float = 0.0
    impressions: float = 0.0
    ctr: float = 0.0
    position: float = 0.0


class SearchAnalyticsResponse(BaseModel):
    rows: List[_SearchRow] = Field(default_factory=list)


class SearchFetcher(SourceFetcher):
    source = SourceKind.SEARCH

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: str,
        default_query: Optional[ReportQuery] = None,
    ) -> None:
        self._client = client
        self.base_url = base_url.rstrip("/")
        self.default_query = default_query or ReportQuery(
            dimensions=["date"], row_limit=25000
        )

    async def fetch(
        self,
        resource: str,
        window: DateWindow,
        bearer_token: str,
        query: Optional[ReportQuery] = None,
    ) -> SourceReport:
        site_url = str(resource or "").strip()
        if not site_url:
            raise SourceRequestError("search site reference is empty")

        query = query or self.default_query
        body = {
            "startDate": window.start.isoformat(),
            "endDate": window.end.isoformat(),
            "dimensions": list(query.dimensions),
            "dataState": "final",
        }
        if query.row_limit:
            body["rowLimit"] = query.row_limit

        payload = await post_report(
            self._client,
            self.source,
            f"{self.base_url}/sites/{quote(site_url, safe='')}/searchAnalytics/query",
            bearer_token,
            body,
        )
        parsed = parse_payload(SearchAnalyticsResponse, payload, self.source)
        rows = [
            ReportRow(
                dimension_values=list(row.keys),
                metric_values=[row.clicks, row.impressions, row.ctr, row.position],
            )
            for row in parsed.rows
        ]
        logger.debug("Search report for %s %s: %d rows", site_url, window.key, len(rows))
        return SourceReport(
            source=self.source,
            window=window,
            dimension_headers=list(query.dimensions),
            metric_headers=list(SEARCH_METRICS),
            rows=rows,
        )
