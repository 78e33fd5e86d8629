"""Tests for the capability registry and HTTP capabilities."""

from __future__ import annotations

import json

import httpx
import pytest

from agent_connect.config import ServiceConfig, Settings
from agent_connect.errors import InvalidActionParams, UnknownAction
from agent_connect.services.capabilities import CapabilityRegistry, HttpCapability
from agent_connect.services.service_registry import ServiceRegistry


def _registry(services: dict[str, ServiceConfig]) -> CapabilityRegistry:
    settings = Settings(OAUTH_SERVICES=services)
    return CapabilityRegistry(ServiceRegistry(settings), settings)


class TestCapabilityRegistry:
    def test_builtins_only_for_configured_services(self):
        registry = _registry({"github": ServiceConfig(client_id="id", client_secret="secret")})

        capability = registry.get("github", "list_repos")
        assert capability.required_scopes == frozenset({"repo"})
        assert capability.url == "https://api.github.com/user/repos"
        assert registry.actions("slack") == []

    def test_unknown_action(self):
        registry = _registry({})
        with pytest.raises(UnknownAction):
            registry.get("github", "list_repos")

    def test_register_replaces(self):
        registry = _registry({})
        registry.register(HttpCapability("acme", "ping", "GET", "https://api.acme.test/ping"))
        registry.register(HttpCapability("acme", "ping", "HEAD", "https://api.acme.test/ping"))
        assert registry.get("acme", "ping").method == "HEAD"
        assert registry.actions("acme") == ["ping"]


class TestHttpCapability:
    @pytest.mark.asyncio
    async def test_get_sends_bearer_and_query(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[])

        capability = HttpCapability(
            "acme", "list", "GET", "https://api.acme.test/items", transport=httpx.MockTransport(handler)
        )
        resp = await capability.invoke("tok", {"limit": 5})

        assert resp.status_code == 200
        assert seen[0].headers["Authorization"] == "Bearer tok"
        assert seen[0].url.params["limit"] == "5"

    @pytest.mark.asyncio
    async def test_post_fills_path_and_sends_json(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201)

        capability = HttpCapability(
            "acme",
            "create",
            "post",
            "https://api.acme.test/repos/{owner}/{repo}/issues",
            transport=httpx.MockTransport(handler),
        )
        await capability.invoke("tok", {"owner": "me", "repo": "proj", "title": "Bug"})

        assert seen[0].method == "POST"
        assert seen[0].url.path == "/repos/me/proj/issues"
        assert json.loads(seen[0].content) == {"title": "Bug"}

    @pytest.mark.asyncio
    async def test_missing_path_param(self):
        capability = HttpCapability("acme", "create", "POST", "https://api.acme.test/{folder}")
        with pytest.raises(InvalidActionParams, match="folder"):
            await capability.invoke("tok", {})
