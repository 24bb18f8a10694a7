"""Analytics reporting API (source A) fetcher.

Issues a single ``properties/{id}:runReport`` call and normalizes the
response rows into ``ReportRow`` objects.  An empty report omits the
``rows`` key entirely, which is not an error.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import httpx
from pydantic import BaseModel, Field, model_validator

from ..errors import ResponseParseError, SourceRequestError
from ..schemas import DateWindow, ReportRow, SourceKind, SourceReport
from ._shared import ReportQuery, SourceFetcher, parse_payload, post_report

logger = logging.getLogger(__name__)


class _Header(BaseModel):
    name: str


class _Value(BaseModel):
    value: str = ""


class _Row(BaseModel):
    dimension_values: List[_Value] = Field(default_factory=list, alias="dimensionValues")
    metric_values: List[_Value] = Field(default_factory=list, alias="metricValues")


class RunReportResponse(BaseModel):
    dimension_headers: List[_Header] = Field(default_factory=list, alias="dimensionHeaders")
    metric_headers: List[_Header] = Field(default_factory=list, alias="metricHeaders")
    rows: List[_Row] = Field(default_factory=list)

    @model_validator(mode="after")
    def _rows_match_headers(self) -> "RunReportResponse":
        dims, mets = len(self.dimension_headers), len(self.metric_headers)
        for row in self.rows:
            if len(row.dimension_values) != dims or len(row.metric_values) != mets:
                raise ValueError("row width does not match headers")
        return self


def _to_number(raw: str) -> float:
    try:
        return float(raw) if raw else 0.0
    except ValueError as exc:
        raise ResponseParseError(f"analytics API returned non-numeric metric {raw!r}") from exc


class AnalyticsFetcher(SourceFetcher):
    source = SourceKind.ANALYTICS

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
            dimensions=["date"], metrics=["sessions", "totalUsers", "screenPageViews"]
        )

    async def fetch(
        self,
        resource: str,
        window: DateWindow,
        bearer_token: str,
        query: Optional[ReportQuery] = None,
    ) -> SourceReport:
        property_id = str(resource or "").strip()
        if property_id.startswith("properties/"):
            property_id = property_id[len("properties/") :]
        if not property_id:
            raise SourceRequestError("analytics property reference is empty")

        query = query or self.default_query
        body = {
            "dateRanges": [
                {"startDate": window.start.isoformat(), "endDate": window.end.isoformat()}
            ],
            "dimensions": [{"name": name} for name in query.dimensions],
            "metrics": [{"name": name} for name in query.metrics],
        }
        if query.dimensions:
            body["orderBys"] = [
                {"dimension": {"dimensionName": query.dimensions[0]}, "desc": False}
            ]
        if query.row_limit:
            body["limit"] = query.row_limit

        payload = await post_report(
            self._client,
            self.source,
            f"{self.base_url}/properties/{property_id}:runReport",
            bearer_token,
            body,
        )
        parsed = parse_payload(RunReportResponse, payload, self.source)
        rows = [
            ReportRow(
                dimension_values=[v.value for v in row.dimension_values],
                metric_values=[_to_number(v.value) for v in row.metric_values],
            )
            for row in parsed.rows
        ]
        logger.debug(
            "Analytics report for property %s %s: %d rows",
            property_id,
            window.key,
            len(rows),
        )
        return SourceReport(
            source=self.source,
            window=window,
            dimension_headers=[h.name for h in parsed.dimension_headers] or list(query.dimensions),
            metric_headers=[h.name for h in parsed.metric_headers] or list(query.metrics),
            rows=rows,
        )
