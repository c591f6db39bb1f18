"""
Configuration for Wellness Router
Cost-aware routing for health, nutrition and fitness chat
"""
import os
from typing import Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseModel):
    """Application settings with production defaults"""

    # Google Gemini API
    gemini_api_key: str = Field(default_factory=lambda: os.getenv("GEMINI_API_KEY", ""))

    # MongoDB (empty URI -> process-local stores)
    mongodb_uri: str = Field(default_factory=lambda: os.getenv("MONGODB_URI", ""))
    mongodb_database: str = Field(default_factory=lambda: os.getenv("MONGODB_DATABASE", "wellness_db"))

    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = Field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")

    # ==========================================================================
    # PROVIDER TIERS
    # ==========================================================================
    # L1: health-critical interpretation (highest accuracy)
    # L2: general advice (cost-optimized)
    # Free: degraded tier used when the daily token budget is exhausted
    l1_model: str = Field(
        default_factory=lambda: os.getenv("L1_MODEL", "gemini-2.5-pro")
    )
    l2_model: str = Field(
        default_factory=lambda: os.getenv("L2_MODEL", "gemini-2.5-flash")
    )
    free_tier_model: str = Field(
        default_factory=lambda: os.getenv("FREE_TIER_MODEL", "gemini-2.5-flash-lite")
    )
    provider_timeout_seconds: int = Field(
        default_factory=lambda: int(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))
    )
    max_output_tokens: int = Field(
        default_factory=lambda: int(os.getenv("MAX_OUTPUT_TOKENS", "1000"))
    )
    temperature: float = Field(
        default_factory=lambda: float(os.getenv("TEMPERATURE", "0.7"))
    )

    # Circuit Breaker: paid provider failures before forcing the free tier
    circuit_failure_threshold: int = Field(
        default_factory=lambda: int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
    )
    circuit_recovery_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CIRCUIT_RECOVERY_SECONDS", "60.0"))
    )

    # ==========================================================================
    # USAGE LEDGER
    # ==========================================================================
    daily_token_limit: int = Field(
        default_factory=lambda: int(os.getenv("DAILY_TOKEN_LIMIT", "50000"))
    )
    # L1 calls are expensive - per-user request caps (3/min, 15/hour, 50/day)
    l1_rate_per_minute: int = Field(
        default_factory=lambda: int(os.getenv("L1_RATE_PER_MINUTE", "3"))
    )
    l1_rate_per_hour: int = Field(
        default_factory=lambda: int(os.getenv("L1_RATE_PER_HOUR", "15"))
    )
    l1_rate_per_day: int = Field(
        default_factory=lambda: int(os.getenv("L1_RATE_PER_DAY", "50"))
    )

    # Sessions
    session_expiration_hours: int = Field(
        default_factory=lambda: int(os.getenv("SESSION_EXPIRATION_HOURS", "168"))  # 1 week
    )
    max_sessions_per_user: int = Field(
        default_factory=lambda: int(os.getenv("MAX_SESSIONS_PER_USER", "50"))
    )

    # Keyword tables (domain classification, L1/L2 triggers)
    # Empty -> packaged app/data/routing_tables.json
    routing_tables_path: str = Field(
        default_factory=lambda: os.getenv("ROUTING_TABLES_PATH", "")
    )

    # Rate Limiting (HTTP)
    rate_limit_per_minute: int = 30

    # CORS - Use env var for production restriction, default "*" for dev
    allowed_origins: str = Field(default_factory=lambda: os.getenv("ALLOWED_ORIGINS", "*"))

    # Security: Admin token for protected endpoints
    admin_token: Optional[str] = Field(default_factory=lambda: os.getenv("ADMIN_TOKEN"))

    # Scheduler
    enable_scheduler: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_SCHEDULER", "true").lower() == "true"
    )


settings = Settings()
