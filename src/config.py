"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Whoop Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- WHOOP OAuth app ---
    whoop_client_id: str
    whoop_client_secret: str  # also the webhook signing secret
    whoop_redirect_uri: str = "http://localhost:8000/api/v1/whoop/oauth/callback"
    whoop_api_base: str = "https://api.prod.whoop.com/developer"
    whoop_token_url: str = "https://api.prod.whoop.com/oauth/oauth2/token"
    whoop_auth_url: str = "https://api.prod.whoop.com/oauth/oauth2/auth"
    whoop_scopes: list[str] = [
        "offline",
        "read:recovery",
        "read:sleep",
        "read:workout",
        "read:profile",
    ]

    # --- Database (optional; in-memory stores when unset) ---
    database_url: str = ""
    database_pool_min_size: int = 2
    database_pool_max_size: int = 20

    # --- Outbound HTTP ---
    http_timeout_seconds: float = 10.0

    # --- Sync tuning file (defaults to the bundled sync_config.yaml) ---
    sync_config_path: str = ""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
