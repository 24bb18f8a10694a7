from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar
from uuid import UUID, uuid5

from elasticsearch import ApiError, ConflictError
from elasticsearch import ConnectionError as ESConnectionError
from elasticsearch import ConnectionTimeout, Elasticsearch, NotFoundError

logger = logging.getLogger(__name__)

_NS_REPORT_ROW = UUID("5d0c7a3e-2b8f-4c61-9e47-a1f3b6d2c809")
_TRANSIENT_STATUS = frozenset({429, 503})

T = TypeVar("T")


def _deterministic_row_id(*parts: str) -> str:
    return str(uuid5(_NS_REPORT_ROW, "|".join(parts)))


def _create_client(
    hosts: List[str],
    username: Optional[str],
    password: Optional[str],
    verify_certs: bool,
) -> Elasticsearch:
    options: Dict[str, Any] = {"verify_certs": verify_certs, "request_timeout": 60}
    if username:
        options["basic_auth"] = (username, password or "")
    return Elasticsearch(hosts, **options)


def _is_transient(exc: BaseException) -> bool:
    """Throttling, unavailability and connection trouble; not 404/409."""
    if isinstance(exc, (NotFoundError, ConflictError)):
        return False
    if isinstance(exc, ApiError):
        return exc.status_code in _TRANSIENT_STATUS
    return isinstance(exc, (ESConnectionError, ConnectionTimeout, OSError))


def _retry_with_backoff(
    func: Callable[..., T],
    *args,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    **kwargs,
) -> T:
    """Call ``func``; retry transient cluster errors with doubling delays."""
    attempts = max(max_attempts, 1)
    delay = initial_delay
    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except Exception as exc:
            if attempt >= attempts or not _is_transient(exc):
                raise
            logger.debug(
                "Elasticsearch call %s failed (%s), attempt %d/%d; sleeping %.1fs",
                getattr(func, "__name__", "request"),
                type(exc).__name__,
                attempt,
                attempts,
                delay,
            )
            time.sleep(delay)
            delay *= 2
            attempt += 1


class _ElasticIndices:
    def __init__(self, prefix: str) -> None:
        self.tokens = f"{prefix}-oauth-tokens"
        self.sites = f"{prefix}-sites"
        self.report_rows = f"{prefix}-report-rows"


class _ElasticBase:
    """Shared client and index bootstrap for the three stores."""

    def __init__(
        self,
        hosts: List[str],
        username: Optional[str],
        password: Optional[str],
        index_prefix: str,
        verify_certs: bool,
        client: Optional[Elasticsearch] = None,
    ) -> None:
        if client is None:
            if not hosts:
                raise ValueError("ELASTICSEARCH_HOST must name at least one host")
            client = _create_client(hosts, username, password, verify_certs)
        self.client = client
        self.indices = _ElasticIndices(index_prefix)

    def _ensure_index(self, name: str, properties: Dict[str, Any]) -> None:
        if self.client.indices.exists(index=name):
            return
        try:
            self.client.indices.create(index=name, mappings={"properties": properties})
        except ApiError as exc:
            # Another process created it between exists() and create().
            if "resource_already_exists_exception" not in str(getattr(exc, "error", exc)):
                raise

    def _iter_search_hits(
        self,
        index: str,
        query: Dict[str, Any],
        sort_field: str,
        size: int = 500,
    ) -> Iterator[Dict[str, Any]]:
        """Yield every matching hit, paging with ``search_after`` on *sort_field*."""
        cursor: Optional[List[Any]] = None
        while True:
            request: Dict[str, Any] = {
                "index": index,
                "query": query,
                "sort": [{sort_field: "asc"}],
                "size": size,
            }
            if cursor:
                request["search_after"] = cursor
            hits = self.client.search(**request).get("hits", {}).get("hits", [])
            yield from hits
            if len(hits) < size:
                return
            cursor = hits[-1].get("sort")
            if not cursor:
                return
