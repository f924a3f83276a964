import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def normalize_database_url(url: str) -> str:
    # Ensure sslmode=require for hosted Postgres URLs
    if url.startswith("postgresql://") and "sslmode=" not in url:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}sslmode=require"
    return url


def _as_bool(name: str, raw: str) -> bool:
    v = raw.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _as_int(name: str, raw: str, minimum: int = 1) -> int:
    try:
        v = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if v < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {v}")
    return v


@dataclass
class Settings:
    database_url: str = "sqlite:///./chat.db"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"])
    ws_path: str = "/ws"
    history_limit: int = 100
    history_max: int = 500
    reject_notices: bool = False
    outbox_size: int = 64
    log_level: str = "INFO"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read settings from the environment (or the given mapping)."""
    env = os.environ if environ is None else environ
    s = Settings()
    s.database_url = normalize_database_url(env.get("DATABASE_URL", s.database_url))
    if "CORS_ORIGINS" in env:
        s.cors_origins = [o.strip() for o in env["CORS_ORIGINS"].split(",") if o.strip()]
    s.ws_path = env.get("CHAT_WS_PATH", s.ws_path)
    if not s.ws_path.startswith("/"):
        raise ValueError(f"CHAT_WS_PATH must start with '/', got {s.ws_path!r}")
    s.history_limit = _as_int("CHAT_HISTORY_LIMIT", env.get("CHAT_HISTORY_LIMIT", str(s.history_limit)))
    s.history_max = _as_int("CHAT_HISTORY_MAX", env.get("CHAT_HISTORY_MAX", str(s.history_max)))
    if s.history_limit > s.history_max:
        raise ValueError("CHAT_HISTORY_LIMIT cannot exceed CHAT_HISTORY_MAX")
    s.reject_notices = _as_bool("CHAT_REJECT_NOTICES", env.get("CHAT_REJECT_NOTICES", "false"))
    s.outbox_size = _as_int("CHAT_OUTBOX_SIZE", env.get("CHAT_OUTBOX_SIZE", str(s.outbox_size)))
    s.log_level = env.get("LOG_LEVEL", s.log_level).upper()
    return s
