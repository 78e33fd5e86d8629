"""pydantic-settings based application configuration."""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServiceConfig(BaseModel):
    """OAuth client registration for one third-party service.

    Values are supplied externally (``OAUTH_SERVICES`` JSON), never per user.
    """

    client_id: str = ""
    client_secret: str = ""
    authorize_endpoint: str = ""
    token_endpoint: str = ""
    revocation_endpoint: str | None = None
    api_base_url: str | None = None
    default_scopes: list[str] = Field(default_factory=list)
    scope_separator: str = " "
    use_pkce: bool = True
    extra_authorize_params: dict[str, str] = Field(default_factory=dict)


class Settings(BaseSettings):
    """agent-connect settings.

    All values are loaded from environment variables.
    A .env file in the working directory is also supported.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Database ---
    DATABASE_URL: str = "postgresql+asyncpg://agent_connect:agent_connect@db:5432/agent_connect"

    # --- JWT (caller identity) ---
    JWT_SECRET: str = "change-this-secret-key"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # --- OAuth ---
    OAUTH_ENCRYPTION_KEY: str = ""  # Fernet key, required
    APP_BASE_URL: str = "http://localhost:8000"  # Public URL the provider redirects back to
    OAUTH_REDIRECT_PATH: str = "/api/connections/{service}/callback"
    OAUTH_REFRESH_LOOKAHEAD_SECONDS: int = 300
    OAUTH_HTTP_TIMEOUT_SECONDS: float = 10.0
    OAUTH_PENDING_TTL_SECONDS: int = 600
    OAUTH_SERVICES: dict[str, ServiceConfig] = Field(default_factory=dict)

    # --- API ---
    CORS_ORIGINS: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    @property
    def async_database_url(self) -> str:
        """Ensure the database URL uses the asyncpg driver."""
        url = self.DATABASE_URL
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    def redirect_uri(self, service: str) -> str:
        """Callback URL registered with *service*."""
        path = self.OAUTH_REDIRECT_PATH.format(service=service)
        return f"{self.APP_BASE_URL.rstrip('/')}{path}"


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings singleton."""
    return Settings()
