from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional

from elasticsearch import Elasticsearch
from elasticsearch.helpers import bulk

from ...schemas import DateWindow, SourceKind, SourceReport
from ...utils.datetime import utc_now
from ..base import ReportSink
from ._helpers import _deterministic_row_id, _ElasticBase, _retry_with_backoff


class ElasticReportStore(_ElasticBase, ReportSink):
    """Stores one document per report row.

    Writing a (tenant, source, window) replaces whatever an earlier run
    stored for that same key.
    """

    def __init__(
        self,
        hosts: List[str],
        username: Optional[str] = None,
        password: Optional[str] = None,
        index_prefix: str = "reportsync",
        verify_certs: bool = True,
        client: Optional[Elasticsearch] = None,
    ) -> None:
        super().__init__(hosts, username, password, index_prefix, verify_certs, client)
        self._ensure_index(
            self.indices.report_rows,
            {
                "tenant_id": {"type": "keyword"},
                "source": {"type": "keyword"},
                "window_key": {"type": "keyword"},
                "window_start": {"type": "date"},
                "window_end": {"type": "date"},
                "dimensions": {"type": "object"},
                "metrics": {"type": "object"},
                "fetched_at": {"type": "date"},
            },
        )

    def _actions(
        self,
        tenant_id: str,
        source: SourceKind,
        window: DateWindow,
        report: SourceReport,
    ) -> Iterator[Dict[str, Any]]:
        fetched_at = utc_now().isoformat()
        for row in report.rows:
            yield {
                "_index": self.indices.report_rows,
                "_id": _deterministic_row_id(
                    tenant_id, source.value, window.key, *row.dimension_values
                ),
                "_source": {
                    "tenant_id": tenant_id,
                    "source": source.value,
                    "window_key": window.key,
                    "window_start": window.start.isoformat(),
                    "window_end": window.end.isoformat(),
                    "dimensions": dict(zip(report.dimension_headers, row.dimension_values)),
                    "metrics": dict(zip(report.metric_headers, row.metric_values)),
                    "fetched_at": fetched_at,
                },
            }

    def write_report(
        self,
        tenant_id: str,
        source: SourceKind,
        window: DateWindow,
        report: SourceReport,
    ) -> int:
        _retry_with_backoff(
            self.client.delete_by_query,
            index=self.indices.report_rows,
            query={
                "bool": {
                    "filter": [
                        {"term": {"tenant_id": tenant_id}},
                        {"term": {"source": source.value}},
                        {"term": {"window_key": window.key}},
                    ]
                }
            },
            conflicts="proceed",
            refresh=True,
        )
        written, _ = bulk(
            self.client,
            self._actions(tenant_id, source, window, report),
            refresh="wait_for",
        )
        return int(written)
