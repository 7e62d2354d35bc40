import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('APP_DATABASE_URL') or os.getenv('DATABASE_URL') or 'postgresql://localhost/shopline'
        # Comma-separated list of allowed CORS origins for browser/mobile clients.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # Paged list endpoints (products, sales, inventory).
        self.default_page_limit = _env_int("DEFAULT_PAGE_LIMIT", 20)
        self.max_page_limit = _env_int("MAX_PAGE_LIMIT", 1000)
        self.session_hours = _env_int("SESSION_HOURS", 24 * 30)

settings = Settings()
