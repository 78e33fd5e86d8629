"""Authorization-code flow: authorize redirect, callback, code exchange.

The flow is bound to a single-use ``PendingAuthorization`` row keyed by a
random state token.  The callback consumes that row before anything else,
so a replayed or forged state can never create or touch a connection.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import urlencode

from agent_connect.errors import (
    CodeExchangeFailure,
    StateMismatch,
    UserDeniedAuthorization,
)
from agent_connect.models import DEFAULT_ACCOUNT_LABEL
from agent_connect.services.connection_locks import ConnectionLocks
from agent_connect.services.credential_store import ConnectionKey, CredentialStore, StoredConnection
from agent_connect.services.scope_validator import join_scopes, parse_scopes
from agent_connect.services.service_registry import ServiceRegistry
from agent_connect.services.token_client import TokenClient
from agent_connect.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationRequest:
    """Where to send the user, and the state that will come back."""

    authorization_url: str
    state: str


class AuthorizationFlowController:
    """Runs the OAuth 2.0 authorization-code flow for registered services."""

    def __init__(
        self,
        store: CredentialStore,
        registry: ServiceRegistry,
        token_client: TokenClient,
        locks: ConnectionLocks,
    ) -> None:
        self._store = store
        self._registry = registry
        self._token_client = token_client
        self._locks = locks

    # ------------------------------------------------------------------
    # PKCE / state
    # ------------------------------------------------------------------

    @staticmethod
    def generate_pkce() -> tuple[str, str]:
        """Generate PKCE code_verifier and code_challenge (S256).

        Returns:
            Tuple of (code_verifier, code_challenge).
        """
        code_verifier = secrets.token_urlsafe(64)[:128]
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        return code_verifier, code_challenge

    @staticmethod
    def generate_state() -> str:
        """Generate a random state parameter for CSRF protection."""
        return secrets.token_urlsafe(32)

    # ------------------------------------------------------------------
    # Authorize redirect
    # ------------------------------------------------------------------

    async def begin_authorization(
        self,
        user_id: str,
        service: str,
        requested_scopes: Iterable[str] | str | None = None,
        account_label: str = DEFAULT_ACCOUNT_LABEL,
    ) -> AuthorizationRequest:
        """Persist a pending authorization and build the provider redirect URL.

        Args:
            user_id: Local user starting the flow.
            service: Registered service name.
            requested_scopes: Scopes to ask for; the service defaults when empty.
            account_label: Which of the user's accounts on *service* this is for.

        Returns:
            AuthorizationRequest with the URL and its state token.

        Raises:
            UnknownService: If *service* is not registered.
        """
        config = self._registry.get(service)
        scopes = parse_scopes(requested_scopes) or parse_scopes(config.default_scopes)

        await self._store.purge_expired_pending()

        state = self.generate_state()
        code_verifier = None
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": self._registry.redirect_uri(service),
            "scope": join_scopes(scopes, config.scope_separator),
            "state": state,
        }
        if config.use_pkce:
            code_verifier, code_challenge = self.generate_pkce()
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        params.update(config.extra_authorize_params)

        await self._store.create_pending(
            state_token=state,
            user_id=user_id,
            service=service,
            account_label=account_label,
            requested_scopes=scopes,
            code_verifier=code_verifier,
        )

        logger.info(
            "Started authorization for %s/%s/%s (scopes=%s)",
            user_id,
            service,
            account_label,
            " ".join(sorted(scopes)),
        )
        return AuthorizationRequest(
            authorization_url=f"{config.authorize_endpoint}?{urlencode(params)}",
            state=state,
        )

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    async def complete_authorization(
        self,
        service: str,
        state: str | None,
        code: str | None = None,
        error: str | None = None,
    ) -> StoredConnection:
        """Handle the provider callback and establish the connection.

        The pending authorization is consumed first, whatever the outcome.

        Raises:
            StateMismatch: Unknown, expired, reused or cross-service state.
            UserDeniedAuthorization: The provider redirected back with ``error``.
            CodeExchangeFailure: The token endpoint rejected the code.
        """
        pending = await self._store.consume_pending(state) if state else None
        if pending is None or pending.service != service:
            logger.warning("Rejected OAuth callback for %s with unknown state (possible CSRF)", service)
            raise StateMismatch("Invalid or expired state parameter", service)

        key = ConnectionKey(pending.user_id, pending.service, pending.account_label)

        if error:
            logger.info("User declined authorization for %s (%s)", key, error)
            raise UserDeniedAuthorization(service, error)
        if not code:
            raise CodeExchangeFailure("Callback did not include an authorization code", service)

        config = self._registry.get(service)
        tokens = await self._token_client.exchange_code(
            service,
            config,
            code=code,
            redirect_uri=self._registry.redirect_uri(service),
            code_verifier=pending.code_verifier,
        )

        granted = tokens.scopes if tokens.scopes is not None else parse_scopes(pending.requested_scopes)
        async with self._locks.get(key):
            connection = await self._store.upsert(
                key,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                scopes=granted,
                expires_at=tokens.expires_at(utcnow()),
                token_type=tokens.token_type,
            )

        logger.info("Connected %s", key)
        return connection
