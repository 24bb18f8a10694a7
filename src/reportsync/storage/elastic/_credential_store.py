from __future__ import annotations

from typing import Any, Dict, List, Optional

from elasticsearch import Elasticsearch, NotFoundError

from ..base import CredentialRepository
from ._helpers import _ElasticBase, _retry_with_backoff


class ElasticCredentialRepository(_ElasticBase, CredentialRepository):
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
            self.indices.tokens,
            {
                "access_token": {"type": "keyword", "index": False},
                "refresh_token": {"type": "keyword", "index": False},
                # Legacy records hold numbers, strings or timestamp objects here.
                "expires_at": {"type": "object", "enabled": False},
                "encrypted": {"type": "boolean"},
                "encryption_algorithm": {"type": "keyword"},
                "updated_at": {"type": "date"},
            },
        )

    def get(self, token_id: str) -> Optional[Dict[str, Any]]:
        try:
            doc = _retry_with_backoff(
                self.client.get, index=self.indices.tokens, id=token_id
            )
        except NotFoundError:
            return None
        return dict(doc["_source"])

    def put(self, token_id: str, document: Dict[str, Any]) -> None:
        _retry_with_backoff(
            self.client.index,
            index=self.indices.tokens,
            id=token_id,
            document=document,
            refresh="wait_for",
        )
