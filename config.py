"""
Service configuration for the image gateway.
Read once from the environment at startup and passed to every component.
"""

import os
import sys
import logging
from dataclasses import dataclass
from typing import Optional, Tuple


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

DEFAULT_AGGREGATOR_BASE_URL = "https://ai-gateway.vercel.sh/v1"
DEFAULT_GOOGLE_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_MODEL_ID = "google/gemini-3-pro-image"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Immutable service settings."""
    environment: str = "production"
    log_level: str = "INFO"
    allowed_origins: Tuple[str, ...] = ("*",)

    # Persistence
    database_url: str = ""
    temp_dir: str = "./temp"

    # Upstream gateways
    aggregator_api_key: Optional[str] = None
    aggregator_base_url: str = DEFAULT_AGGREGATOR_BASE_URL
    google_api_key: Optional[str] = None
    google_base_url: str = DEFAULT_GOOGLE_BASE_URL
    default_model: str = DEFAULT_MODEL_ID

    # Request limits
    max_image_bytes: int = 4 * 1024 * 1024
    max_instruction_length: int = 10000

    # Metering
    min_balance: int = 500
    fallback_token_estimate: int = 1500

    # Identity (bearer JWTs issued by the external identity provider)
    jwt_secret: Optional[str] = None
    jwt_audience: Optional[str] = None

    # Billing
    dodo_api_key: Optional[str] = None
    dodo_environment: str = "test_mode"
    dodo_webhook_key: Optional[str] = None
    starter_product_id: Optional[str] = None
    pro_product_id: Optional[str] = None
    public_base_url: str = "http://localhost:8000"

    def __post_init__(self):
        """Validate numeric limits."""
        if self.max_image_bytes <= 0:
            raise ValueError("max_image_bytes must be > 0")
        if self.max_instruction_length <= 0:
            raise ValueError("max_instruction_length must be > 0")
        if self.min_balance < 0:
            raise ValueError("min_balance must be >= 0")
        if self.fallback_token_estimate <= 0:
            raise ValueError("fallback_token_estimate must be > 0")

    @property
    def is_dev(self) -> bool:
        return self.environment == "development"

    @property
    def use_postgres(self) -> bool:
        return self.database_url.startswith("postgres")

    @property
    def sqlite_path(self) -> str:
        return os.path.join(self.temp_dir, "app_data.db")


def load_settings() -> Settings:
    """Build settings from environment variables."""
    public_base_url = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000")
    if public_base_url.endswith("/"):
        public_base_url = public_base_url[:-1]

    origins = tuple(
        origin.strip()
        for origin in os.environ.get("ALLOWED_ORIGINS", "*").split(",")
        if origin.strip()
    )

    return Settings(
        environment=os.environ.get("ENVIRONMENT", "production").lower(),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        allowed_origins=origins or ("*",),
        database_url=os.environ.get("DATABASE_URL", ""),
        temp_dir=os.path.abspath(os.environ.get("TEMP_DIR", "./temp")),
        aggregator_api_key=os.environ.get("AI_GATEWAY_API_KEY") or None,
        aggregator_base_url=os.environ.get("AI_GATEWAY_BASE_URL", DEFAULT_AGGREGATOR_BASE_URL),
        google_api_key=(
            os.environ.get("GOOGLE_DIRECT_API_KEY") or os.environ.get("GEMINI_API_KEY") or None
        ),
        google_base_url=os.environ.get("GOOGLE_GEMINI_BASE_URL", DEFAULT_GOOGLE_BASE_URL),
        default_model=os.environ.get("IMAGE_MODEL_ID", DEFAULT_MODEL_ID),
        max_image_bytes=_env_int("MAX_IMAGE_SIZE_MB", 4) * 1024 * 1024,
        max_instruction_length=_env_int("MAX_INSTRUCTION_LENGTH", 10000),
        min_balance=_env_int("MIN_TOKEN_BALANCE", 500),
        fallback_token_estimate=_env_int("FALLBACK_TOKEN_ESTIMATE", 1500),
        jwt_secret=os.environ.get("SUPABASE_JWT_SECRET") or None,
        jwt_audience=os.environ.get("SUPABASE_JWT_AUDIENCE") or None,
        dodo_api_key=os.environ.get("DODO_PAYMENTS_API_KEY") or None,
        dodo_environment=os.environ.get("DODO_PAYMENTS_ENVIRONMENT", "test_mode"),
        dodo_webhook_key=os.environ.get("DODO_PAYMENTS_WEBHOOK_KEY") or None,
        starter_product_id=os.environ.get("DODO_STARTER_PRODUCT_ID") or None,
        pro_product_id=os.environ.get("DODO_PRO_PRODUCT_ID") or None,
        public_base_url=public_base_url,
    )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging to stdout."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def log_settings_summary(settings: Settings, logger: logging.Logger) -> None:
    """Log which integrations are configured without exposing secrets."""
    logger.info("="*60)
    logger.info("Starting Image Gateway")
    logger.info("="*60)
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Database: {'PostgreSQL' if settings.use_postgres else 'SQLite'}")
    logger.info(f"Aggregator gateway enabled: {bool(settings.aggregator_api_key)} ({settings.aggregator_base_url})")
    logger.info(f"Google direct enabled: {bool(settings.google_api_key)}")
    logger.info(f"Default model: {settings.default_model}")
    logger.info(f"Identity verification enabled: {bool(settings.jwt_secret)}")
    logger.info(f"Dodo Payments enabled: {bool(settings.dodo_api_key)}")
    logger.info(f"Minimum balance: {settings.min_balance}, fallback estimate: {settings.fallback_token_estimate}")
