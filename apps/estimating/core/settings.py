"""
Settings management for the estimating service
"""

import json
from typing import Dict, List, Any, Optional
from pydantic_settings import BaseSettings
from pydantic import Field, validator
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def mask_secret(secret: str, show_chars: int = 4) -> str:
    """Mask sensitive data, showing only first and last N characters"""
    if not secret or len(secret) <= show_chars * 2:
        return "***"
    return f"{secret[:show_chars]}...{secret[-show_chars:]}"


class Settings(BaseSettings):
    """Application settings with validation"""

    # Application Info
    APP_NAME: str = Field(default="Roofing Estimating Service", env="APP_NAME")
    APP_VERSION: str = Field(default="1.0.0", env="APP_VERSION")
    ENVIRONMENT: str = Field(default="development", env="ENVIRONMENT")
    API_V1_PREFIX: str = Field(default="/api/v1", env="API_V1_PREFIX")

    # General Configuration
    LOG_LEVEL: str = Field(default="INFO", env="LOG_LEVEL")
    debug_mode: bool = Field(default=False, env="DEBUG_MODE")
    CORS_ORIGINS: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        env="CORS_ORIGINS"
    )

    # Supabase (auth, row-secured tables, edge functions)
    SUPABASE_URL: Optional[str] = Field(default=None, env="SUPABASE_URL")
    SUPABASE_ANON_KEY: Optional[str] = Field(default=None, env="SUPABASE_ANON_KEY")
    SUPABASE_SERVICE_KEY: Optional[str] = Field(default=None, env="SUPABASE_SERVICE_KEY")

    # Edge functions invoked by the estimate builder
    PRICING_FUNCTION_NAME: str = Field(
        default="excel-style-estimate-calculator", env="PRICING_FUNCTION_NAME"
    )
    SOLAR_FUNCTION_NAME: str = Field(
        default="google-solar-measurements", env="SOLAR_FUNCTION_NAME"
    )
    REMOTE_TIMEOUT_SECONDS: int = Field(default=30, env="REMOTE_TIMEOUT_SECONDS")

    # Derivation data overrides
    PACKAGING_RULES_PATH: Optional[str] = Field(default=None, env="PACKAGING_RULES_PATH")
    PRICELIST_PATH: Optional[str] = Field(default=None, env="PRICELIST_PATH")

    # Pricing defaults (percent)
    DEFAULT_TARGET_MARGIN_PERCENT: float = Field(default=30.0, env="DEFAULT_TARGET_MARGIN_PERCENT")
    DEFAULT_OVERHEAD_PERCENT: float = Field(default=15.0, env="DEFAULT_OVERHEAD_PERCENT")
    DEFAULT_COMMISSION_PERCENT: float = Field(default=5.0, env="DEFAULT_COMMISSION_PERCENT")
    DEFAULT_WASTE_FACTOR_PERCENT: float = Field(default=10.0, env="DEFAULT_WASTE_FACTOR_PERCENT")
    DEFAULT_CONTINGENCY_PERCENT: float = Field(default=5.0, env="DEFAULT_CONTINGENCY_PERCENT")

    # Database
    database_url: str = Field(
        default="sqlite:///./estimating.db", env="DATABASE_URL"
    )

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra fields

    @validator("CORS_ORIGINS", pre=True)
    def parse_list_field(cls, v):
        """Parse comma-separated or JSON list fields"""
        if isinstance(v, str):
            if v.startswith('['):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    return []
            else:
                return [x.strip() for x in v.split(',') if x.strip()]
        return v

    @property
    def supabase_key(self) -> Optional[str]:
        """Service key when available, anon key otherwise."""
        return self.SUPABASE_SERVICE_KEY or self.SUPABASE_ANON_KEY

    def mask_secrets(self) -> Dict[str, str]:
        """Return configured secrets in masked form for diagnostics"""
        secrets = {
            "SUPABASE_ANON_KEY": self.SUPABASE_ANON_KEY,
            "SUPABASE_SERVICE_KEY": self.SUPABASE_SERVICE_KEY,
        }
        return {k: mask_secret(v) for k, v in secrets.items() if v}

    def validate_required_integrations(self) -> Dict[str, str]:
        """Validate and return status of required integrations."""
        integrations: Dict[str, Any] = {}

        if self.SUPABASE_URL and self.supabase_key:
            integrations["supabase"] = "configured"
        else:
            integrations["supabase"] = "not configured"

        return integrations

    def ensure_critical_settings(self) -> None:
        """Validate presence of essential runtime configuration."""
        if self.ENVIRONMENT != "production":
            return

        missing = []

        if not self.database_url:
            missing.append("DATABASE_URL")
        if not (self.SUPABASE_URL and self.supabase_key):
            missing.append("SUPABASE_URL/SUPABASE_SERVICE_KEY")

        if missing:
            raise ValueError(
                f"Missing required settings: {', '.join(missing)}"
            )


# Create global settings instance
settings = Settings()
