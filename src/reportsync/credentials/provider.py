"""OAuth 2.0 token-endpoint client."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from ..errors import CredentialExpiredError, ProviderUnavailableError, ResponseParseError
from ..schemas import TokenGrant

logger = logging.getLogger(__name__)


class IdentityProvider(ABC):
    @abstractmethod
    async def refresh(self, identity: str, refresh_token: str) -> TokenGrant:
        """Exchange *refresh_token* for a new access token.

        Raises ``CredentialExpiredError`` when the provider rejects the
        grant and ``ProviderUnavailableError`` on transient failures.
        """
        raise NotImplementedError

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        raise NotImplementedError


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(payload, dict):
        return str(
            payload.get("error_description")
            or payload.get("error")
            or response.reason_phrase
        )
    return response.reason_phrase


class OAuthProviderClient(IdentityProvider):
    """Calls the identity provider's token endpoint over ``httpx``.

    The underlying ``httpx.AsyncClient`` is created once and reused;
    call :meth:`aclose` on shutdown.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_url: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0)
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post_form(self, identity: str, form: Dict[str, str]) -> TokenGrant:
        try:
            response = await self._client.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as exc:
            raise ProviderUnavailableError(
                f"Token endpoint timed out for {identity}"
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(
                f"Token endpoint unreachable for {identity}: {exc}"
            ) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Token endpoint returned {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.error(
                "Token refresh rejected for %s (status=%d): %s",
                identity,
                response.status_code,
                detail,
            )
            raise CredentialExpiredError(identity, detail)

        try:
            payload: Any = response.json()
            return TokenGrant.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            raise ResponseParseError(
                f"Unexpected token endpoint response for {identity}: {exc}"
            ) from exc

    async def refresh(self, identity: str, refresh_token: str) -> TokenGrant:
        if not refresh_token:
            raise CredentialExpiredError(identity, "Refresh token not found")
        return await self._post_form(
            identity,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        return await self._post_form(
            "authorization-code",
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )
