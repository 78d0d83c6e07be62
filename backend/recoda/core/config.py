import os
from dataclasses import dataclass, field

from recoda.constants import APP_DIR


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Process configuration, read from the environment."""

    database_url: str = field(
        default_factory=lambda: os.getenv(
            "RECODA_DATABASE_URL", f"sqlite:///{(APP_DIR / 'data').as_posix()}/recoda.db"
        )
    )
    remote_url: str = field(
        default_factory=lambda: os.getenv("RECODA_REMOTE_URL", "http://localhost:3001")
    )
    frontend_url: str = field(
        default_factory=lambda: os.getenv("RECODA_FRONTEND_URL", "http://localhost:3000")
    )
    http_timeout: float = field(
        default_factory=lambda: float(os.getenv("RECODA_HTTP_TIMEOUT", "30"))
    )
    sync_continue_on_error: bool = field(
        default_factory=lambda: _env_flag("RECODA_SYNC_CONTINUE_ON_ERROR")
    )
    exports_dir: str = field(
        default_factory=lambda: os.getenv("RECODA_EXPORTS_DIR", (APP_DIR / "exports").as_posix())
    )


def get_settings() -> Settings:
    return Settings()
