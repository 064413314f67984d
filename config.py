import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        access_token_secret: str,
        refresh_token_secret: str,
        access_token_ttl_secs: int,
        refresh_token_ttl_secs: int,
        cors_origins: list[str],
        enable_scheduler: bool,
        track_budget_spending: bool,
        log_level: str,
        host: str,
        port: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.access_token_secret = access_token_secret
        self.refresh_token_secret = refresh_token_secret
        self.access_token_ttl_secs = access_token_ttl_secs
        self.refresh_token_ttl_secs = refresh_token_ttl_secs
        self.cors_origins = cors_origins
        self.enable_scheduler = enable_scheduler
        self.track_budget_spending = track_budget_spending
        self.log_level = log_level
        self.host = host
        self.port = port


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "UTC")
    access_token_secret = os.getenv(
        "FINANCE_ACCESS_TOKEN_SECRET",
        "3f1c0d0b7a5e4d9c8b2a6f1e0d9c8b7a6f5e4d3c2b1a09f8e7d6c5b4a3928170",
    )
    refresh_token_secret = os.getenv(
        "FINANCE_REFRESH_TOKEN_SECRET",
        "9a8b7c6d5e4f30211f2e3d4c5b6a79880f1e2d3c4b5a69788796a5b4c3d2e1f0",
    )
    access_token_ttl_secs = int(os.getenv("FINANCE_ACCESS_TOKEN_TTL_SECS", "900"))
    refresh_token_ttl_secs = int(
        os.getenv("FINANCE_REFRESH_TOKEN_TTL_SECS", str(7 * 24 * 3600))
    )
    cors_origins = [
        origin.strip()
        for origin in os.getenv("FINANCE_CORS_ORIGIN", "http://localhost:3000").split(
            ","
        )
        if origin.strip()
    ]
    return Settings(
        database_url=database_url,
        timezone=timezone,
        access_token_secret=access_token_secret,
        refresh_token_secret=refresh_token_secret,
        access_token_ttl_secs=access_token_ttl_secs,
        refresh_token_ttl_secs=refresh_token_ttl_secs,
        cors_origins=cors_origins,
        enable_scheduler=_env_flag("FINANCE_ENABLE_SCHEDULER"),
        track_budget_spending=_env_flag("FINANCE_TRACK_BUDGET_SPENDING"),
        log_level=os.getenv("FINANCE_LOG_LEVEL", "INFO").upper(),
        host=os.getenv("FINANCE_HOST", "0.0.0.0"),
        port=int(os.getenv("FINANCE_PORT", "8000")),
    )
