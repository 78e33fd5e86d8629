"""Tests for ServiceRegistry."""

from __future__ import annotations

import pytest

from agent_connect.config import ServiceConfig, Settings
from agent_connect.errors import UnknownService
from agent_connect.services.service_registry import ServiceRegistry


def _registry(**services: ServiceConfig) -> ServiceRegistry:
    return ServiceRegistry(Settings(OAUTH_SERVICES=services, APP_BASE_URL="https://agents.example.com/"))


class TestServiceRegistry:
    def test_known_service_gets_endpoint_defaults(self):
        registry = _registry(google=ServiceConfig(client_id="id", client_secret="secret"))

        config = registry.get("google")
        assert config.token_endpoint == "https://oauth2.googleapis.com/token"
        assert config.extra_authorize_params["access_type"] == "offline"
        assert registry.is_configured("google")

    def test_explicit_values_override_defaults(self):
        registry = _registry(
            github=ServiceConfig(client_id="id", client_secret="s", default_scopes=["repo"])
        )
        assert registry.get("github").default_scopes == ["repo"]

    def test_unknown_service_without_endpoints_is_skipped(self):
        registry = _registry(custom=ServiceConfig(client_id="id", client_secret="s"))
        assert registry.names == []
        with pytest.raises(UnknownService):
            registry.get("custom")
        assert not registry.is_configured("custom")

    def test_missing_secret_is_not_configured(self):
        registry = _registry(github=ServiceConfig(client_id="id"))
        assert registry.names == ["github"]
        assert not registry.is_configured("github")

    def test_redirect_uri(self):
        registry = _registry()
        assert registry.redirect_uri("slack") == "https://agents.example.com/api/connections/slack/callback"
