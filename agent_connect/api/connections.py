"""Connection API endpoints.

Provides:
- ``GET    /connections``                          -- List the caller's connections
- ``GET    /connections/{service}/config-status``  -- Is the service configured
- ``GET    /connections/{service}/authorize``      -- Get authorization URL
- ``GET    /connections/{service}/callback``       -- Provider redirect target
- ``GET    /connections/{service}/status``         -- Connection status
- ``DELETE /connections/{service}/disconnect``     -- Revoke (and optionally delete)
- ``POST   /connections/{service}/invoke``         -- Run an action with stored credentials

All endpoints except ``config-status`` and ``callback`` require JWT
authentication.  The callback identifies the user through the single-use
state token instead.

Failures are reported as one of a few outcomes (``needs_permission``,
``reconnect``, ``cancelled``, ``retry_later``); provider error bodies are
never passed through.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from agent_connect.errors import (
    CodeExchangeFailure,
    InsufficientScopes,
    InvalidActionParams,
    OAuthError,
    ReconnectRequired,
    TransientRefreshFailure,
    UnknownAction,
    UnknownService,
    UserDeniedAuthorization,
)
from agent_connect.models import DEFAULT_ACCOUNT_LABEL
from agent_connect.services.auth_service import get_current_user
from agent_connect.services.connection_service import (
    ConnectionService,
    ConnectionSummary,
    get_connection_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connections", tags=["connections"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class AuthorizeResponse(BaseModel):
    authorization_url: str
    state: str


class ConnectionResponse(BaseModel):
    service: str
    account_label: str
    connected: bool
    status: str
    scopes: list[str] = []
    expires_at: datetime | None = None


class CallbackResponse(BaseModel):
    connected: bool
    outcome: str
    connection: ConnectionResponse | None = None


class StatusResponse(BaseModel):
    service: str
    connected: bool
    accounts: list[ConnectionResponse] = []


class DisconnectResponse(BaseModel):
    disconnected: bool


class ConfigStatusResponse(BaseModel):
    service: str
    configured: bool


class InvokeRequest(BaseModel):
    action: str
    params: dict[str, Any] = Field(default_factory=dict)
    account_label: str = DEFAULT_ACCOUNT_LABEL


class InvokeResponse(BaseModel):
    ok: bool
    outcome: str
    status_code: int
    data: Any = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_response(summary: ConnectionSummary) -> ConnectionResponse:
    return ConnectionResponse(
        service=summary.service,
        account_label=summary.account_label,
        connected=summary.connected,
        status=summary.status,
        scopes=summary.scopes,
        expires_at=summary.expires_at,
    )


def _http_error(exc: OAuthError, extra: dict[str, Any] | None = None) -> HTTPException:
    """Translate an expected failure into an HTTP error with a stable outcome code."""
    detail: dict[str, Any] = {"outcome": exc.outcome, "message": exc.message}
    if extra:
        detail.update(extra)
    headers: dict[str, str] | None = None

    if isinstance(exc, InsufficientScopes):
        code = status.HTTP_403_FORBIDDEN
        detail["missing_scopes"] = sorted(exc.missing)
    elif isinstance(exc, (ReconnectRequired, CodeExchangeFailure)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, TransientRefreshFailure):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
        if exc.retry_after is not None:
            headers = {"Retry-After": str(int(exc.retry_after))}
    elif isinstance(exc, (UnknownService, UnknownAction)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, InvalidActionParams):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        code = status.HTTP_400_BAD_REQUEST

    return HTTPException(status_code=code, detail=detail, headers=headers)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=list[ConnectionResponse])
async def list_connections(
    current_user: dict = Depends(get_current_user),
    connections: ConnectionService = Depends(get_connection_service),
) -> list[ConnectionResponse]:
    """List all of the caller's connections."""
    summaries = await connections.list_connections(current_user["user_id"])
    return [_to_response(s) for s in summaries]


@router.get("/{service}/config-status", response_model=ConfigStatusResponse)
async def get_config_status(
    service: str,
    connections: ConnectionService = Depends(get_connection_service),
) -> ConfigStatusResponse:
    """Check if the service has OAuth client credentials configured (no auth required)."""
    return ConfigStatusResponse(service=service, configured=connections.registry.is_configured(service))


@router.get("/{service}/authorize", response_model=AuthorizeResponse)
async def get_authorize_url(
    service: str,
    scopes: str | None = Query(default=None, description="Space- or comma-separated scopes"),
    account_label: str = Query(default=DEFAULT_ACCOUNT_LABEL),
    current_user: dict = Depends(get_current_user),
    connections: ConnectionService = Depends(get_connection_service),
) -> AuthorizeResponse:
    """Get the provider authorization URL for a service."""
    try:
        request = await connections.connect(
            current_user["user_id"], service, scopes, account_label=account_label
        )
    except OAuthError as exc:
        raise _http_error(exc) from exc
    return AuthorizeResponse(authorization_url=request.authorization_url, state=request.state)


@router.get("/{service}/callback", response_model=CallbackResponse)
async def handle_callback(
    service: str,
    state: str | None = None,
    code: str | None = None,
    error: str | None = None,
    connections: ConnectionService = Depends(get_connection_service),
) -> CallbackResponse:
    """Exchange the authorization code for tokens."""
    try:
        summary = await connections.complete(service, state, code=code, error=error)
    except UserDeniedAuthorization:
        return CallbackResponse(connected=False, outcome="cancelled")
    except OAuthError as exc:
        raise _http_error(exc) from exc
    return CallbackResponse(connected=True, outcome="connected", connection=_to_response(summary))


@router.get("/{service}/status", response_model=StatusResponse)
async def get_status(
    service: str,
    account_label: str | None = None,
    current_user: dict = Depends(get_current_user),
    connections: ConnectionService = Depends(get_connection_service),
) -> StatusResponse:
    """Check connection status for a service."""
    try:
        summaries = await connections.status(current_user["user_id"], service, account_label)
    except OAuthError as exc:
        raise _http_error(exc) from exc
    return StatusResponse(
        service=service,
        connected=any(s.connected for s in summaries),
        accounts=[_to_response(s) for s in summaries],
    )


@router.delete("/{service}/disconnect", response_model=DisconnectResponse)
async def disconnect(
    service: str,
    account_label: str = DEFAULT_ACCOUNT_LABEL,
    purge: bool = False,
    current_user: dict = Depends(get_current_user),
    connections: ConnectionService = Depends(get_connection_service),
) -> DisconnectResponse:
    """Revoke a connection; ``purge=true`` also deletes it."""
    try:
        existed = await connections.disconnect(
            current_user["user_id"], service, account_label, purge=purge
        )
    except OAuthError as exc:
        raise _http_error(exc) from exc
    return DisconnectResponse(disconnected=existed)


@router.post("/{service}/invoke", response_model=InvokeResponse)
async def invoke_action(
    service: str,
    body: InvokeRequest,
    current_user: dict = Depends(get_current_user),
    connections: ConnectionService = Depends(get_connection_service),
) -> InvokeResponse:
    """Run a registered action against the service with stored credentials."""
    user_id = current_user["user_id"]
    try:
        result = await connections.invoke(
            user_id, service, body.account_label, body.action, body.params
        )
    except InsufficientScopes as exc:
        upgrade = await connections.upgrade_authorization(
            user_id, service, body.account_label, exc.missing
        )
        raise _http_error(exc, {"authorization_url": upgrade.authorization_url}) from exc
    except OAuthError as exc:
        raise _http_error(exc) from exc

    return InvokeResponse(
        ok=result.ok,
        outcome="connected" if result.ok else "provider_error",
        status_code=result.status_code,
        data=result.data,
    )
