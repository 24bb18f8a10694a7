from __future__ import annotations

import logging
from typing import List, Optional

from elasticsearch import Elasticsearch, NotFoundError
from pydantic import ValidationError

from ...schemas import SourceKind, Tenant
from ...utils.datetime import utc_now
from ..base import TenantRepository
from ._helpers import _ElasticBase, _retry_with_backoff

logger = logging.getLogger(__name__)


class ElasticTenantRepository(_ElasticBase, TenantRepository):
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
            self.indices.sites,
            {
                "id": {"type": "keyword"},
                "name": {"type": "text"},
                "owner_id": {"type": "keyword"},
                "setup_completed": {"type": "boolean"},
                "analytics_property_id": {"type": "keyword"},
                "analytics_token_id": {"type": "keyword"},
                "search_site_url": {"type": "keyword"},
                "search_token_id": {"type": "keyword"},
                "data_status": {"type": "object"},
            },
        )

    def get(self, tenant_id: str) -> Optional[Tenant]:
        try:
            doc = _retry_with_backoff(
                self.client.get, index=self.indices.sites, id=tenant_id
            )
        except NotFoundError:
            return None
        return Tenant.model_validate(doc["_source"])

    def upsert(self, tenant: Tenant) -> None:
        _retry_with_backoff(
            self.client.update,
            index=self.indices.sites,
            id=tenant.id,
            doc=tenant.model_dump(),
            doc_as_upsert=True,
            refresh="wait_for",
        )

    def list_eligible(self) -> List[Tenant]:
        query = {
            "bool": {
                "filter": [{"term": {"setup_completed": True}}],
                "should": [
                    {"exists": {"field": "analytics_property_id"}},
                    {"exists": {"field": "search_site_url"}},
                ],
                "minimum_should_match": 1,
            }
        }
        tenants: List[Tenant] = []
        for hit in self._iter_search_hits(self.indices.sites, query, sort_field="id"):
            try:
                tenant = Tenant.model_validate(hit["_source"])
            except ValidationError:
                logger.warning("Skipping malformed site document %s", hit.get("_id"))
                continue
            # Empty strings satisfy "exists"; re-check in Python.
            if tenant.is_eligible:
                tenants.append(tenant)
        return tenants

    def record_source_status(
        self,
        tenant_id: str,
        source: SourceKind,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        label = source.label
        _retry_with_backoff(
            self.client.update,
            index=self.indices.sites,
            id=tenant_id,
            doc={
                "data_status": {
                    f"{label}_last_fetched": utc_now().isoformat(),
                    f"{label}_status": status,
                    f"{label}_error": error,
                }
            },
        )
