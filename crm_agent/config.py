from typing import Dict, List, Any, Optional
import os

from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


class ModelPricing(BaseModel):
    """USD price per million tokens"""
    input_per_million: float = 0.0
    output_per_million: float = 0.0


DEFAULT_MODEL_PRICING: Dict[str, ModelPricing] = {
    "claude-sonnet-4-5": ModelPricing(input_per_million=3.0, output_per_million=15.0),
    "claude-haiku-4-5": ModelPricing(input_per_million=1.0, output_per_million=5.0),
}


class AgentSettings(BaseModel):
    """Runtime configuration for the agent service"""
    environment: str = Field(default="development")
    service_name: str = Field(default="crm-agent")
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")

    model_provider: str = Field(default="anthropic", description="Provider name passed to init_chat_model")
    specialist_model: str = Field(default="claude-sonnet-4-5")
    triage_model: str = Field(default="claude-haiku-4-5")
    model_pricing: Dict[str, ModelPricing] = Field(default_factory=lambda: dict(DEFAULT_MODEL_PRICING))

    database_path: str = Field(default=":memory:")

    working_memory_ttl_seconds: int = Field(default=3600)
    working_memory_max_entries: int = Field(default=10000, description="Cap on cached working-memory entries")
    working_memory_sweep_seconds: int = Field(default=60, description="Interval between expired-entry sweeps")
    session_cache_ttl_seconds: int = Field(default=5)
    session_cache_max_entries: int = Field(default=1000)

    approval_lifetime_hours: int = Field(default=24)
    tax_rate: float = Field(default=0.10, description="GST applied by pricing tools")

    seed_demo_data: bool = Field(default=False, description="Load a demo organisation on startup")
    dev_session_token: Optional[str] = Field(default=None, description="Bearer token accepted for the demo user")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls, overrides: Optional[Dict[str, Any]] = None) -> "AgentSettings":
        """Load settings from environment variables"""

        values: Dict[str, Any] = {
            "environment": os.getenv("ENVIRONMENT", "development"),
            "service_name": os.getenv("SERVICE_NAME", "crm-agent"),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "log_format": os.getenv("LOG_FORMAT", "json"),
            "model_provider": os.getenv("MODEL_PROVIDER", "anthropic"),
            "specialist_model": os.getenv("SPECIALIST_MODEL", "claude-sonnet-4-5"),
            "triage_model": os.getenv("TRIAGE_MODEL", "claude-haiku-4-5"),
            "database_path": os.getenv("DATABASE_PATH", ":memory:"),
            "working_memory_ttl_seconds": _env_int("WORKING_MEMORY_TTL_SECONDS", 3600),
            "working_memory_max_entries": _env_int("WORKING_MEMORY_MAX_ENTRIES", 10000),
            "working_memory_sweep_seconds": _env_int("WORKING_MEMORY_SWEEP_SECONDS", 60),
            "session_cache_ttl_seconds": _env_int("SESSION_CACHE_TTL_SECONDS", 5),
            "session_cache_max_entries": _env_int("SESSION_CACHE_MAX_ENTRIES", 1000),
            "approval_lifetime_hours": _env_int("APPROVAL_LIFETIME_HOURS", 24),
            "tax_rate": _env_float("TAX_RATE", 0.10),
            "seed_demo_data": os.getenv("SEED_DEMO_DATA", "false").lower() in ("1", "true", "yes"),
            "dev_session_token": os.getenv("DEV_SESSION_TOKEN") or None,
            "cors_origins": [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
        }
        if overrides:
            values.update(overrides)
        return cls(**values)

    def pricing_for(self, model_id: str) -> ModelPricing:
        return self.model_pricing.get(model_id, ModelPricing())
