import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        session_days: int,
        session_cookie: str,
        cookie_secure: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.session_days = session_days
        self.session_cookie = session_cookie
        self.cookie_secure = cookie_secure


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("EXPENSES_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "expenses.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("EXPENSES_TIMEZONE", "Europe/Kyiv")
    csrf_secret = os.getenv(
        "EXPENSES_CSRF_SECRET",
        "5d0f3c1e9b7a44c2a86e21f0c4b9d7e3a1f6082b5c9e4d7a3b1c0e8f2a6d4b97",
    )
    session_days = int(os.getenv("EXPENSES_SESSION_DAYS", "30"))
    session_cookie = os.getenv("EXPENSES_SESSION_COOKIE", "auth-session")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        session_days=session_days,
        session_cookie=session_cookie,
        cookie_secure=_env_flag("EXPENSES_COOKIE_SECURE"),
    )
