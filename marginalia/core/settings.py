from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    embedding_provider: str
    embedding_model: str | None
    embed_queue_delay_ms: int
    reconcile_on_startup: bool
    search_timeout_s: float
    embed_timeout_s: float

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/marginalia.db").strip(),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "local").strip(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "").strip() or None,
            embed_queue_delay_ms=_i("EMBED_QUEUE_DELAY_MS", "100"),
            reconcile_on_startup=_b("RECONCILE_ON_STARTUP", "1"),
            search_timeout_s=_f("SEARCH_TIMEOUT_S", "10"),
            embed_timeout_s=_f("EMBED_TIMEOUT_S", "120"),
        )
