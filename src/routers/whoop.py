"""WHOOP connection management: OAuth consent, callback and disconnect."""

from __future__ import annotations

import hmac
import logging
import secrets

from fastapi import APIRouter, Cookie, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from src.dependencies import AppSettings, WhoopService
from src.whoop.errors import ReauthorizationRequired, TokenNotFound, WhoopError

router = APIRouter(prefix="/whoop", tags=["whoop"])
logger = logging.getLogger("whoopsync.connections")

# Binds the consent redirect to the browser that started it
STATE_COOKIE = "whoop_oauth_state"
STATE_MAX_AGE_SECONDS = 600


@router.get("/oauth/authorize")
async def authorize(request: Request, service: WhoopService, settings: AppSettings) -> RedirectResponse:
    """Send the member to WHOOP's consent page."""
    state = secrets.token_urlsafe(16)
    url = service.client.authorization_url(
        settings.whoop_redirect_uri,
        settings.whoop_scopes,
        state=state,
    )
    response = RedirectResponse(url, status_code=307)
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=STATE_MAX_AGE_SECONDS,
        httponly=True,
        samesite="lax",
        secure=request.url.scheme == "https",
    )
    return response


@router.get("/oauth/callback")
async def oauth_callback(
    service: WhoopService,
    settings: AppSettings,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    expected_state: str | None = Cookie(None, alias=STATE_COOKIE),
) -> JSONResponse:
    """Exchange the authorization code and store the member's tokens as ACTIVE."""
    if error:
        raise HTTPException(status_code=400, detail=f"WHOOP authorization failed: {error}")
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")
    if not state or not expected_state or not hmac.compare_digest(state, expected_state):
        logger.warning("WHOOP OAuth callback with missing or mismatched state")
        raise HTTPException(status_code=400, detail="Invalid OAuth state")

    try:
        record = await service.connect(code, settings.whoop_redirect_uri)
    except ReauthorizationRequired as exc:
        raise HTTPException(status_code=400, detail=exc.reason or "Authorization rejected") from exc
    except WhoopError as exc:
        logger.error("WHOOP OAuth callback failed: %s", exc)
        raise HTTPException(status_code=502, detail="WHOOP is unavailable") from exc

    response = JSONResponse(
        {
            "user_id": record.user_id,
            "state": record.state.value,
            "scopes": sorted(record.scopes),
            "expires_at": record.expires_at.isoformat(),
        }
    )
    response.delete_cookie(STATE_COOKIE)
    return response


@router.delete("/connections/{user_id}")
async def disconnect(user_id: int, service: WhoopService) -> dict:
    """Revoke a member's WHOOP connection."""
    try:
        record = await service.disconnect(user_id)
    except TokenNotFound as exc:
        raise HTTPException(status_code=404, detail="No WHOOP connection for this user") from exc
    logger.info("Disconnected WHOOP user %s", user_id)
    return {"user_id": user_id, "state": record.state.value}
