from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


SIGNATURE_MODES = ("off", "lenient", "strict")
PENDING_BACKENDS = ("sql", "redis")


def _normalize_base(url: Optional[str]) -> str:
    return (url or "").strip().rstrip("/")


def _int(env: dict, key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    return int(raw)


def _float(env: dict, key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    return float(raw)


def _bool(env: dict, key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


# ----------------------------
# Settings
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str

    # engine / DB gate
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    # Mercado Pago
    mp_access_token: str = ""
    mp_api_base: str = "https://api.mercadopago.com"
    mp_webhook_secret: str = ""
    mp_signature_mode: str = "lenient"

    # Flow
    flow_api_key: str = ""
    flow_secret_key: str = ""
    flow_api_url: str = ""

    # URLs
    api_base_url: str = "http://localhost:8000"
    public_base_url: str = "http://localhost:5173"

    # mail (Resend)
    resend_api_key: str = ""
    email_from: str = "onboarding@resend.dev"
    resend_api_base: str = "https://api.resend.com"

    # timeouts in seconds
    provider_timeout: float = 10.0
    checkout_timeout: float = 20.0

    # pending payment index
    pending_backend: str = "sql"
    redis_url: str = "redis://127.0.0.1:6379"
    pending_ttl_seconds: int = 24 * 3600

    # admin
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    # logging
    log_level: str = "INFO"
    log_json: bool = True

    cors_origins: tuple = field(default_factory=tuple)

    def __post_init__(self):
        if not self.database_url:
            raise ValueError("DATABASE_URL is required")
        if self.mp_signature_mode not in SIGNATURE_MODES:
            raise ValueError(
                f"MP_SIGNATURE_MODE must be one of {SIGNATURE_MODES}, "
                f"got {self.mp_signature_mode!r}"
            )
        if self.pending_backend not in PENDING_BACKENDS:
            raise ValueError(
                f"PENDING_BACKEND must be one of {PENDING_BACKENDS}, "
                f"got {self.pending_backend!r}"
            )

    @property
    def mp_configured(self) -> bool:
        return bool(self.mp_access_token)

    @property
    def flow_configured(self) -> bool:
        return bool(
            self.flow_api_key and self.flow_secret_key and self.flow_api_url
        )

    @classmethod
    def from_env(cls, env: Optional[dict] = None) -> "Settings":
        """
        Build settings from the process environment (after loading `.env`),
        or from an explicit mapping.
        """
        if env is None:
            load_dotenv()
            env = dict(os.environ)

        origins = tuple(
            o.strip() for o in env.get("CORS_ORIGINS", "").split(",")
            if o.strip()
        )
        return cls(
            database_url=env.get("DATABASE_URL", ""),
            db_pool_size=_int(env, "DB_POOL_SIZE", 10),
            db_max_overflow=_int(env, "DB_MAX_OVERFLOW", 10),
            db_pool_timeout=_int(env, "DB_POOL_TIMEOUT", 30),
            db_gate_limit=(
                _int(env, "DB_GATE_LIMIT", 0) or None
            ),
            mp_access_token=env.get("MP_ACCESS_TOKEN", "").strip(),
            mp_api_base=_normalize_base(
                env.get("MP_API_BASE", "https://api.mercadopago.com")
            ),
            mp_webhook_secret=env.get("MP_WEBHOOK_SECRET", "").strip(),
            mp_signature_mode=env.get(
                "MP_SIGNATURE_MODE", "lenient"
            ).strip().lower(),
            flow_api_key=env.get("FLOW_API_KEY", "").strip(),
            flow_secret_key=env.get("FLOW_SECRET_KEY", "").strip(),
            flow_api_url=_normalize_base(env.get("FLOW_API_URL")),
            api_base_url=_normalize_base(
                env.get("API_BASE_URL", "http://localhost:8000")
            ),
            public_base_url=_normalize_base(
                env.get("PUBLIC_BASE_URL", "http://localhost:5173")
            ),
            resend_api_key=env.get("RESEND_API_KEY", "").strip(),
            email_from=env.get("EMAIL_FROM", "onboarding@resend.dev"),
            provider_timeout=_float(env, "PROVIDER_TIMEOUT", 10.0),
            checkout_timeout=_float(env, "CHECKOUT_TIMEOUT", 20.0),
            pending_backend=env.get("PENDING_BACKEND", "sql").strip().lower(),
            redis_url=env.get("REDIS_URL", "redis://127.0.0.1:6379"),
            session_secret=env.get("SESSION_SECRET", "dev-secret-change-me"),
            admin_username=env.get("ADMIN_USERNAME", "admin"),
            admin_password=env.get("ADMIN_PASSWORD", "supasecret"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            log_json=_bool(env, "LOG_JSON", True),
            cors_origins=origins,
        )
