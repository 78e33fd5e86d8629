"""Static registry of actions agents can invoke on connected services.

Each action is a fixed ``Capability``: the scopes it needs and how to
call the provider with a token.  Lookup is a plain dict keyed by
``(service, action)``.

Usage::

    registry = CapabilityRegistry(ServiceRegistry())
    capability = registry.get("github", "list_repos")
    response = await capability.invoke(token, {"per_page": 10})
"""

from __future__ import annotations

import logging
import string
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

import httpx

from agent_connect.config import Settings, get_settings
from agent_connect.errors import InvalidActionParams, UnknownAction
from agent_connect.services.service_registry import ServiceRegistry

logger = logging.getLogger(__name__)


class Capability(ABC):
    """One action on one service."""

    def __init__(self, service: str, action: str, required_scopes: Iterable[str] = ()) -> None:
        self.service = service
        self.action = action
        self.required_scopes = frozenset(required_scopes)

    @abstractmethod
    async def invoke(self, token: str, params: dict[str, Any]) -> httpx.Response:
        """Call the provider with *token* and return its raw response."""
        ...


class HttpCapability(Capability):
    """Capability implemented as a single bearer-authenticated HTTP request.

    ``url`` may contain ``{placeholders}``; they are filled from *params*
    and removed from it.  Remaining params go to the query string for
    GET/DELETE and to a JSON body otherwise.
    """

    def __init__(
        self,
        service: str,
        action: str,
        method: str,
        url: str,
        required_scopes: Iterable[str] = (),
        *,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(service, action, required_scopes)
        self.method = method.upper()
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._transport = transport

    def _render(self, params: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        fields = {name for _, name, _, _ in string.Formatter().parse(self.url) if name}
        missing = fields - params.keys()
        if missing:
            raise InvalidActionParams(
                f"Missing path parameters: {', '.join(sorted(missing))}", self.service
            )
        url = self.url.format(**{k: params[k] for k in fields})
        rest = {k: v for k, v in params.items() if k not in fields}
        return url, rest

    async def invoke(self, token: str, params: dict[str, Any]) -> httpx.Response:
        url, rest = self._render(params)
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json", **self.headers}
        request_kwargs: dict[str, Any] = {"headers": headers}
        if self.method in ("GET", "DELETE"):
            request_kwargs["params"] = rest
        else:
            request_kwargs["json"] = rest

        timeout = self.timeout if self.timeout is not None else get_settings().OAUTH_HTTP_TIMEOUT_SECONDS
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            return await client.request(self.method, url, **request_kwargs)


# (service, action, method, path, scopes)
_BUILTIN_CAPABILITIES: list[tuple[str, str, str, str, tuple[str, ...]]] = [
    ("github", "get_user", "GET", "/user", ("read:user",)),
    ("github", "list_repos", "GET", "/user/repos", ("repo",)),
    ("github", "create_issue", "POST", "/repos/{owner}/{repo}/issues", ("repo",)),
    (
        "google",
        "gmail_list_messages",
        "GET",
        "/gmail/v1/users/me/messages",
        ("https://www.googleapis.com/auth/gmail.readonly",),
    ),
    (
        "google",
        "gmail_send",
        "POST",
        "/gmail/v1/users/me/messages/send",
        ("https://www.googleapis.com/auth/gmail.send",),
    ),
    ("slack", "list_channels", "GET", "/conversations.list", ("channels:read",)),
    ("slack", "post_message", "POST", "/chat.postMessage", ("chat:write",)),
]


class CapabilityRegistry:
    """Lookup table of capabilities for configured services."""

    def __init__(
        self,
        services: ServiceRegistry,
        settings: Settings | None = None,
        *,
        load_builtin: bool = True,
    ) -> None:
        self._services = services
        self._settings = settings or get_settings()
        self._capabilities: dict[tuple[str, str], Capability] = {}
        if load_builtin:
            self._load_builtin()

    def _load_builtin(self) -> None:
        configured = set(self._services.names)
        for service, action, method, path, scopes in _BUILTIN_CAPABILITIES:
            if service not in configured:
                continue
            base_url = self._services.get(service).api_base_url
            if not base_url:
                continue
            self.register(
                HttpCapability(
                    service,
                    action,
                    method,
                    f"{base_url.rstrip('/')}{path}",
                    scopes,
                    timeout=self._settings.OAUTH_HTTP_TIMEOUT_SECONDS,
                )
            )

    def register(self, capability: Capability) -> None:
        """Register (or replace) a capability."""
        self._capabilities[(capability.service, capability.action)] = capability
        logger.debug("Registered capability %s.%s", capability.service, capability.action)

    def get(self, service: str, action: str) -> Capability:
        """Return the capability for ``service.action``.

        Raises:
            UnknownAction: If nothing is registered under that name.
        """
        capability = self._capabilities.get((service, action))
        if capability is None:
            raise UnknownAction(f"Unknown action {action!r} for {service}", service)
        return capability

    def actions(self, service: str) -> list[str]:
        return sorted(a for s, a in self._capabilities if s == service)
