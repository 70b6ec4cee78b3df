"""
Runtime configuration for Algoritmia.

Settings are read from the process environment once, when the application is
built. Development defaults keep a local SQLite database and a placeholder JWT
secret; `ensure_secure_config_on_startup` refuses to boot a production-like
environment that still carries the placeholder.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field


DEV_JWT_SECRET = "change-me"


def _is_prod_like(env: str) -> bool:
    return (env or "").lower() in {"prod", "production", "stage", "staging"}


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise SystemExit(f"{name} must be an integer, got {raw!r}") from exc


def _list_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default) or ""
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass(frozen=True)
class Settings:
    env: str = "dev"
    port: int = 3000
    database_url: str = "sqlite:///./algoritmia.db"
    hash_rounds: int = 10
    jwt_secret: str = DEV_JWT_SECRET
    jwt_algorithm: str = "HS256"
    access_token_minutes: int = 60
    refresh_token_days: int = 7
    reset_token_minutes: int = 15
    frontend_url: str = "http://localhost:5173"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    admin_email: str = "admin@mail.com"
    admin_password: str = "admin123"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            env=os.getenv("ALGORITMIA_ENV", "dev"),
            port=_int_env("ALGORITMIA_PORT", 3000),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./algoritmia.db"),
            hash_rounds=_int_env("HASH_SALT", 10),
            jwt_secret=os.getenv("JWT_SECRET", DEV_JWT_SECRET),
            access_token_minutes=_int_env("JWT_EXPIRES_MINUTES", 60),
            refresh_token_days=_int_env("REFRESH_EXPIRES_DAYS", 7),
            reset_token_minutes=_int_env("RESET_TOKEN_MINUTES", 15),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
            cors_origins=_list_env("CORS_ORIGINS", "*"),
            admin_email=os.getenv("ADMIN_EMAIL", "admin@mail.com"),
            admin_password=os.getenv("ADMIN_PASSWORD", "admin123"),
        )


def ensure_secure_config_on_startup(settings: Settings) -> None:
    """Abort startup when a production-like environment keeps development secrets."""
    if not _is_prod_like(settings.env):
        return
    if not settings.jwt_secret or settings.jwt_secret == DEV_JWT_SECRET:
        raise SystemExit("Refusing to start: JWT_SECRET is unset or the development placeholder in production.")
    if settings.hash_rounds < 10:
        raise SystemExit("Refusing to start: HASH_SALT below 10 in production.")
