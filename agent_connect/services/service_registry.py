"""Per-service OAuth client registrations.

Endpoints for a few well-known providers ship as defaults; client
credentials always come from ``OAUTH_SERVICES`` in the environment.  A
service is only usable once it has a client id.
"""

from __future__ import annotations

import logging

from agent_connect.config import ServiceConfig, Settings, get_settings
from agent_connect.errors import UnknownService

logger = logging.getLogger(__name__)

# Provider endpoint defaults (merged under configured values)
_KNOWN_SERVICES: dict[str, dict] = {
    "github": {
        "authorize_endpoint": "https://github.com/login/oauth/authorize",
        "token_endpoint": "https://github.com/login/oauth/access_token",
        "api_base_url": "https://api.github.com",
        "default_scopes": ["read:user"],
        "use_pkce": False,
    },
    "google": {
        "authorize_endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_endpoint": "https://oauth2.googleapis.com/token",
        "revocation_endpoint": "https://oauth2.googleapis.com/revoke",
        "api_base_url": "https://www.googleapis.com",
        "default_scopes": ["openid", "https://www.googleapis.com/auth/userinfo.email"],
        "extra_authorize_params": {"access_type": "offline", "prompt": "consent"},
    },
    "slack": {
        "authorize_endpoint": "https://slack.com/oauth/v2/authorize",
        "token_endpoint": "https://slack.com/api/oauth.v2.access",
        "api_base_url": "https://slack.com/api",
        "default_scopes": ["channels:read"],
        "scope_separator": ",",
        "use_pkce": False,
    },
}


class ServiceRegistry:
    """Lookup table of :class:`ServiceConfig` keyed by service name."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._services: dict[str, ServiceConfig] = {}
        self._load()

    def _load(self) -> None:
        configured = self._settings.OAUTH_SERVICES or {}
        for name, config in configured.items():
            defaults = _KNOWN_SERVICES.get(name, {})
            explicit = config.model_dump(exclude_unset=True)
            merged = ServiceConfig(**{**defaults, **explicit})
            if not merged.authorize_endpoint or not merged.token_endpoint:
                logger.warning("Skipping OAuth service %s: endpoints not configured", name)
                continue
            self._services[name] = merged
            logger.info("Registered OAuth service: %s", name)

    @property
    def names(self) -> list[str]:
        return sorted(self._services)

    def get(self, service: str) -> ServiceConfig:
        """Return the registration for *service*.

        Raises:
            UnknownService: If the service is not configured.
        """
        config = self._services.get(service)
        if config is None:
            raise UnknownService(f"Unsupported service: {service}", service)
        return config

    def is_configured(self, service: str) -> bool:
        """Check whether *service* has client credentials configured."""
        config = self._services.get(service)
        return bool(config and config.client_id and config.client_secret)

    def redirect_uri(self, service: str) -> str:
        return self._settings.redirect_uri(service)
