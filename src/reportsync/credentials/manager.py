"""Token lifecycle management.

:class:`TokenManager` hands out currently-valid bearer tokens and
refreshes them against the identity provider when they are about to
expire.  Refreshes are single-flight per identity: the first caller that
needs a refresh starts it, every concurrent caller for the same identity
awaits that same refresh and receives the same token or the same error.

The refresh runs as its own task and callers await it through
``asyncio.shield``, so a caller being cancelled (for example by a sweep
deadline) never cancels a refresh other callers are waiting on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from ..errors import IntegrityError, NoCredentialError, ReportSyncError
from ..schemas import TokenGrant, TokenSet, ValidToken
from ..storage.base import CredentialRepository
from ..utils.datetime import expiry_to_epoch_ms, now_ms, utc_now
from .envelope import CredentialCipher, is_encrypted
from .provider import IdentityProvider

logger = logging.getLogger(__name__)


class TokenManager:
    def __init__(
        self,
        repository: CredentialRepository,
        cipher: CredentialCipher,
        provider: IdentityProvider,
        *,
        skew_seconds: int = 60,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self._cipher = cipher
        self._skew_ms = max(int(skew_seconds), 0) * 1000
        self._clock = clock
        self._inflight: Dict[str, "asyncio.Task[ValidToken]"] = {}

    # ── Public API ──────────────────────────────────────────

    async def get_valid_token(self, identity: str) -> ValidToken:
        _, tokens = await self._load(identity)
        if self._is_fresh(tokens):
            return ValidToken(access_token=tokens.access_token, expires_at=tokens.expires_at)
        return await self._refresh_single_flight(identity, force=False)

    async def refresh_now(self, identity: str) -> None:
        """Refresh regardless of expiry (still coalesced with in-flight refreshes)."""
        await self._refresh_single_flight(identity, force=True)

    async def is_token_valid(self, identity: str) -> bool:
        try:
            _, tokens = await self._load(identity)
        except ReportSyncError:
            return False
        return self._clock() < tokens.expires_at

    async def store_grant(
        self,
        identity: str,
        grant: TokenGrant,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ValidToken:
        """Persist a newly authorized token pair in encrypted form."""
        pending = self._inflight.get(identity)
        if pending is not None:
            # Let the running refresh land first so it cannot overwrite us.
            await asyncio.gather(asyncio.shield(pending), return_exceptions=True)
        expires_at = self._clock() + grant.expires_in * 1000
        document = dict(metadata or {})
        document.update(
            self._cipher.encrypt_tokens(
                grant.access_token, grant.refresh_token or "", expires_at
            )
        )
        document["updated_at"] = utc_now().isoformat()
        await asyncio.to_thread(self.repository.put, identity, document)
        logger.info("Stored new OAuth grant (token_id=%s)", identity)
        return ValidToken(access_token=grant.access_token, expires_at=expires_at)

    # ── Internals ───────────────────────────────────────────

    def _is_fresh(self, tokens: TokenSet) -> bool:
        return self._clock() < tokens.expires_at - self._skew_ms

    async def _load(self, identity: str) -> Tuple[Dict[str, Any], TokenSet]:
        record = await asyncio.to_thread(self.repository.get, identity)
        if not record:
            raise NoCredentialError(identity)

        if is_encrypted(record):
            try:
                fields = self._cipher.decrypt_tokens(record)
            except IntegrityError:
                logger.critical(
                    "Credential record failed integrity check (token_id=%s); "
                    "the encryption key may have been rotated without re-encryption",
                    identity,
                )
                raise
        else:
            fields = {
                "access_token": record.get("access_token") or "",
                "refresh_token": record.get("refresh_token") or "",
                "expires_at": record.get("expires_at"),
            }

        expires_at = expiry_to_epoch_ms(fields.get("expires_at"))
        if expires_at is None:
            logger.warning(
                "Credential record has no readable expiry (token_id=%s); treating as expired",
                identity,
            )
            expires_at = 0
        return record, TokenSet(
            access_token=fields["access_token"],
            refresh_token=fields["refresh_token"],
            expires_at=expires_at,
        )

    async def _refresh_single_flight(self, identity: str, *, force: bool) -> ValidToken:
        task = self._inflight.get(identity)
        if task is None:
            task = asyncio.ensure_future(self._refresh(identity, force=force))
            self._inflight[identity] = task

            def _release(done: "asyncio.Task[ValidToken]") -> None:
                if self._inflight.get(identity) is done:
                    del self._inflight[identity]

            task.add_done_callback(_release)
        else:
            logger.debug("Joining in-flight token refresh (token_id=%s)", identity)
        return await asyncio.shield(task)

    async def _refresh(self, identity: str, *, force: bool) -> ValidToken:
        record, tokens = await self._load(identity)
        if not force and self._is_fresh(tokens):
            # A refresh that finished between our read and this one already won.
            return ValidToken(access_token=tokens.access_token, expires_at=tokens.expires_at)

        logger.info("Token expired or expiring soon, refreshing (token_id=%s)", identity)
        grant = await self.provider.refresh(identity, tokens.refresh_token)

        refresh_token = grant.refresh_token or tokens.refresh_token
        if grant.refresh_token:
            logger.info("Provider rotated the refresh token (token_id=%s)", identity)
        expires_at = self._clock() + grant.expires_in * 1000

        document = dict(record)
        document.update(
            self._cipher.encrypt_tokens(grant.access_token, refresh_token, expires_at)
        )
        document["updated_at"] = utc_now().isoformat()
        await asyncio.to_thread(self.repository.put, identity, document)

        logger.info("Token refreshed successfully (token_id=%s)", identity)
        return ValidToken(access_token=grant.access_token, expires_at=expires_at)
