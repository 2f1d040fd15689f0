import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Backend endpoints
    api_base_url: str = Field(default="http://localhost:8080", alias="API_BASE_URL")
    upload_base_url: str | None = Field(default=None, alias="UPLOAD_BASE_URL")
    api_key: str = Field(default="", alias="API_KEY")
    request_timeout: float = Field(default=30.0, alias="REQUEST_TIMEOUT")

    # Response envelope
    success_code: int = Field(default=0, alias="SUCCESS_CODE")
    token_expired_code: int = Field(default=40100, alias="TOKEN_EXPIRED_CODE")

    # Cache
    default_cache_ttl: float = Field(default=300.0, alias="DEFAULT_CACHE_TTL")
    cache_max_size: int = Field(default=200, alias="CACHE_MAX_SIZE")

    # Retry
    retry_base_delay: float = Field(default=1.0, alias="RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=5.0, alias="RETRY_MAX_DELAY")

    # Token renewal
    token_renew_path: str = Field(default="/v1/auth/refresh", alias="TOKEN_RENEW_PATH")
    token_refresh_threshold: float = Field(default=300.0, alias="TOKEN_REFRESH_THRESHOLD")
    token_refresh_timeout: float = Field(default=10.0, alias="TOKEN_REFRESH_TIMEOUT")
    token_settle_window: float = Field(default=0.5, alias="TOKEN_SETTLE_WINDOW")
    upload_refresh_threshold: float = Field(default=60.0, alias="UPLOAD_REFRESH_THRESHOLD")

    # In-flight task sweep
    stale_task_age: float = Field(default=30.0, alias="STALE_TASK_AGE")
    sweep_interval: float = Field(default=10.0, alias="SWEEP_INTERVAL")

    # Auth failure handling
    redirect_on_auth_failure: bool = Field(default=False, alias="REDIRECT_ON_AUTH_FAILURE")
    auth_route: str = Field(default="/pages/user_center/index", alias="AUTH_ROUTE")

    debug: bool = Field(default=False, alias="NETLAYER_DEBUG")


def load_settings() -> Settings:
    """Build settings from the process environment (and .env)."""
    return Settings.model_validate(dict(os.environ))


global_settings = load_settings()
