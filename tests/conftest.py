"""Test configuration.

Each test gets a fresh SQLite database (aiosqlite) and a fake OAuth
provider served through ``httpx.MockTransport`` -- no network, no
PostgreSQL required.
"""

import asyncio
import os
from collections.abc import AsyncGenerator
from datetime import timedelta
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment variables before importing application modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only")
os.environ.setdefault("OAUTH_ENCRYPTION_KEY", Fernet.generate_key().decode())

TOKEN_URL = "https://auth.acme.test/token"
REVOKE_URL = "https://auth.acme.test/revoke"
API_BASE = "https://api.acme.test"


class FakeProvider:
    """Scriptable OAuth provider + resource API.

    ``token_responses`` / ``api_responses`` are queues; when empty, the
    token endpoint mints ``access-N`` / ``refresh-N`` pairs valid for an
    hour and the API answers 200.  Queue items may be exceptions, which
    are raised as transport errors.
    """

    def __init__(self) -> None:
        self.token_requests: list[dict[str, str]] = []
        self.revocations: list[dict[str, str]] = []
        self.api_requests: list[httpx.Request] = []
        self.token_responses: list[httpx.Response | Exception] = []
        self.api_responses: list[httpx.Response | Exception] = []
        self.token_delay = 0.0
        self.issued = 0

    @property
    def refresh_requests(self) -> list[dict[str, str]]:
        return [r for r in self.token_requests if r.get("grant_type") == "refresh_token"]

    def _next(self, queue: list[httpx.Response | Exception]) -> httpx.Response | None:
        if not queue:
            return None
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            form = dict(parse_qsl(request.content.decode()))
            self.token_requests.append(form)
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            scripted = self._next(self.token_responses)
            if scripted is not None:
                return scripted
            self.issued += 1
            return httpx.Response(
                200,
                json={
                    "access_token": f"access-{self.issued}",
                    "refresh_token": f"refresh-{self.issued}",
                    "expires_in": 3600,
                    "token_type": "Bearer",
                },
            )
        if str(request.url) == REVOKE_URL:
            self.revocations.append(dict(parse_qsl(request.content.decode())))
            return httpx.Response(200)
        if request.url.host == "api.acme.test":
            self.api_requests.append(request)
            scripted = self._next(self.api_responses)
            if scripted is not None:
                return scripted
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def settings():
    from agent_connect.config import ServiceConfig, Settings

    return Settings(
        OAUTH_ENCRYPTION_KEY=Fernet.generate_key().decode(),
        APP_BASE_URL="http://testserver",
        OAUTH_REFRESH_LOOKAHEAD_SECONDS=300,
        OAUTH_SERVICES={
            "acme": ServiceConfig(
                client_id="acme-client",
                client_secret="acme-secret",
                authorize_endpoint="https://auth.acme.test/authorize",
                token_endpoint=TOKEN_URL,
                revocation_endpoint=REVOKE_URL,
                api_base_url=API_BASE,
                default_scopes=["read"],
            ),
        },
    )


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory bound to a fresh SQLite database file."""
    from agent_connect.database import Base
    import agent_connect.models  # noqa: F401 - Import to register models with Base

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def connection_service(session_factory, settings, provider):
    """A fully wired ConnectionService talking to the fake provider."""
    from agent_connect.services.capabilities import HttpCapability
    from agent_connect.services.connection_service import ConnectionService

    service = ConnectionService(session_factory, settings, transport=provider.transport)
    service.capabilities.register(
        HttpCapability("acme", "list_items", "GET", f"{API_BASE}/items", ["read"], transport=provider.transport)
    )
    service.capabilities.register(
        HttpCapability(
            "acme", "create_item", "POST", f"{API_BASE}/items/{{folder}}", ["read", "write"],
            transport=provider.transport,
        )
    )
    return service


async def seed_connection(
    service,
    *,
    user_id: str = "user-1",
    account_label: str = "default",
    access_token: str = "stored-access",
    refresh_token: str | None = "stored-refresh",
    scopes: frozenset[str] = frozenset({"read"}),
    expires_in: timedelta | None = timedelta(hours=1),
):
    """Insert a connection directly through the store."""
    from agent_connect.services.credential_store import ConnectionKey
    from agent_connect.utils.datetime_utils import utcnow

    key = ConnectionKey(user_id, "acme", account_label)
    await service.store.upsert(
        key,
        access_token=access_token,
        refresh_token=refresh_token,
        scopes=scopes,
        expires_at=utcnow() + expires_in if expires_in is not None else None,
    )
    return key


def make_auth_headers(sub: str = "user-1") -> dict[str, str]:
    """Create Authorization headers with a valid access token."""
    from agent_connect.services.auth_service import issue_caller_token

    token = issue_caller_token(sub)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def seed(connection_service):
    """``await seed(**overrides)`` inserts a connection for ``user-1``."""

    async def _seed(**overrides):
        return await seed_connection(connection_service, **overrides)

    return _seed


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return make_auth_headers()
