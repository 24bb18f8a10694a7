"""Shared pieces of the reporting-API fetchers.

Fetchers never retry; they classify failures for the orchestrator:

* ``ProviderUnavailableError``: network errors, 429 and 5xx (retryable)
* ``SourceRequestError``: any other 4xx, e.g. an invalid property
  reference or a site the token cannot read (permanent)
* ``ResponseParseError``: a 2xx body that fails validation (permanent)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ..config import Settings
from ..errors import ProviderUnavailableError, ResponseParseError, SourceRequestError
from ..schemas import DateWindow, SourceKind, SourceReport

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


@dataclass
class ReportQuery:
    """Which dimensions/metrics to request; shape translation lives elsewhere."""

    dimensions: List[str] = field(default_factory=list)
    metrics: List[str] = field(default_factory=list)
    row_limit: Optional[int] = None


class SourceFetcher(ABC):
    source: SourceKind

    @abstractmethod
    async def fetch(
        self,
        resource: str,
        window: DateWindow,
        bearer_token: str,
        query: Optional[ReportQuery] = None,
    ) -> SourceReport:
        raise NotImplementedError


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """One pooled client shared by both fetchers for the process lifetime."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.provider_timeout_seconds, connect=10.0),
        headers={"Accept": "application/json"},
    )


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or response.reason_phrase)
        if error:
            return str(error)
    return response.reason_phrase


async def post_report(
    client: httpx.AsyncClient,
    source: SourceKind,
    url: str,
    bearer_token: str,
    body: Dict[str, Any],
) -> Any:
    """POST a report request and return the decoded JSON body."""
    label = source.label
    try:
        response = await client.post(
            url,
            json=body,
            headers={"Authorization": f"Bearer {bearer_token}"},
        )
    except httpx.TimeoutException as exc:
        raise ProviderUnavailableError(f"{label} API timed out") from exc
    except httpx.TransportError as exc:
        raise ProviderUnavailableError(f"{label} API unreachable: {exc}") from exc

    status = response.status_code
    if status == 429 or status >= 500:
        raise ProviderUnavailableError(
            f"{label} API error {status}: {_error_message(response)}",
            status_code=status,
        )
    if status >= 400:
        raise SourceRequestError(
            f"{label} API error {status}: {_error_message(response)}",
            status_code=status,
        )
    try:
        return response.json()
    except ValueError as exc:
        raise ResponseParseError(f"{label} API returned non-JSON body") from exc


def parse_payload(model: Type[M], payload: Any, source: SourceKind) -> M:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ResponseParseError(
            f"{source.label} API response failed validation: {exc.error_count()} error(s)"
        ) from exc
