from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from ..errors import (
    CredentialExpiredError,
    PermissionDeniedError,
    ProviderUnavailableError,
    ReportSyncError,
    TenantNotFoundError,
)
from ..schemas import (
    CredentialExchangeRequest,
    CredentialExchangeResponse,
    CredentialRefreshRequest,
    CredentialRefreshResponse,
    CredentialStatusResponse,
    ManualRunRequest,
    ManualRunResponse,
    SiteCreatedEvent,
    SiteCreatedResponse,
)
from ..services import Services
from .access import require_caller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _services(request: Request) -> Services:
    return request.app.state.services


@router.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.post("/ingest/manual", response_model=ManualRunResponse)
async def manual_ingest(
    body: ManualRunRequest,
    request: Request,
    requester: str = Depends(require_caller),
) -> ManualRunResponse:
    """Fetch both sources for one site now; per-source results, never all-or-nothing."""
    try:
        return await _services(request).orchestrator.run_manual(body.tenant_id, requester)
    except TenantNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PermissionDeniedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@router.post("/credentials/refresh", response_model=CredentialRefreshResponse)
async def refresh_credential(body: CredentialRefreshRequest, request: Request):
    try:
        await _services(request).tokens.refresh_now(body.token_id)
    except ReportSyncError as exc:
        logger.warning(
            "Credential refresh failed for %s token %s: %s",
            body.type.label,
            body.token_id,
            exc.kind,
        )
        return JSONResponse(
            status_code=500,
            content=CredentialRefreshResponse(success=False, message=str(exc)).model_dump(),
        )
    except Exception as exc:
        logger.exception("Credential refresh crashed for token %s", body.token_id)
        return JSONResponse(
            status_code=500,
            content=CredentialRefreshResponse(success=False, message=str(exc)).model_dump(),
        )
    return CredentialRefreshResponse(success=True, message="Token refreshed successfully")


@router.post("/credentials/exchange")
async def exchange_credential(
    body: CredentialExchangeRequest,
    request: Request,
    requester: str = Depends(require_caller),
) -> Dict[str, Any]:
    """Trade an authorization code for tokens and store them under ``tokenId``."""
    services = _services(request)
    try:
        grant = await services.provider.exchange_code(body.code, body.redirect_uri)
        stored = await services.tokens.store_grant(
            body.token_id,
            grant,
            {"user_id": requester, "source": body.type.label},
        )
    except CredentialExpiredError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProviderUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ReportSyncError as exc:
        logger.warning("Code exchange failed for token %s: %s", body.token_id, exc.kind)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    response = CredentialExchangeResponse(token_id=body.token_id, expires_at=stored.expires_at)
    return response.model_dump(by_alias=True)


@router.get("/credentials/{token_id}/status")
async def credential_status(token_id: str, request: Request) -> Dict[str, Any]:
    valid = await _services(request).tokens.is_token_valid(token_id)
    return CredentialStatusResponse(token_id=token_id, valid=valid).model_dump(by_alias=True)


@router.post("/events/site-created", status_code=202)
async def site_created(event: SiteCreatedEvent, request: Request) -> Dict[str, Any]:
    task_id = await _services(request).backfill.handle_site_created(event)
    response = SiteCreatedResponse(backfill_scheduled=task_id is not None, task_id=task_id)
    return response.model_dump(by_alias=True)


@router.get("/tasks/{task_id}")
def task_status(task_id: str, request: Request) -> Dict[str, Any]:
    task = _services(request).task_manager.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    payload = asdict(task)
    payload["status"] = task.status.value
    return payload
