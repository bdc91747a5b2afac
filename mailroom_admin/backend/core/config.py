"""Admin backend configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WebSettings(BaseSettings):
    """Settings for the admin backend."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    # App
    debug: bool = Field(default=False, alias="WEB_DEBUG")
    secret_key: str = Field(..., alias="WEB_SECRET_KEY")
    host: str = Field(default="0.0.0.0", alias="WEB_HOST")
    port: int = Field(default=8081, alias="WEB_PORT")

    # JWT
    jwt_algorithm: str = Field(default="HS256", alias="WEB_JWT_ALGORITHM")
    jwt_expire_minutes: int = Field(default=30, alias="WEB_JWT_EXPIRE_MINUTES")

    # CORS
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="WEB_CORS_ORIGINS"
    )

    # Database (store of record)
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")

    # Roles admitted to /admin endpoints
    admin_roles_raw: str = Field(default="admin,owner", alias="WEB_ADMIN_ROLES")

    # Admin IP gate
    admin_ip_gate: bool = Field(default=True, alias="WEB_ADMIN_IP_GATE")
    # Comma-separated IPs/CIDRs seeded into an empty whitelist at startup
    admin_ip_bootstrap: str = Field(default="", alias="WEB_ADMIN_IP_BOOTSTRAP")
    # Re-check guard invariants against a fresh snapshot right before writing
    whitelist_revalidate: bool = Field(default=True, alias="WEB_WHITELIST_REVALIDATE")

    # Logging
    log_level: str = Field(default="INFO", alias="WEB_LOG_LEVEL")
    log_dir: str = Field(default="/app/logs", alias="WEB_LOG_DIR")

    @field_validator("jwt_algorithm", mode="before")
    @classmethod
    def validate_jwt_algorithm(cls, v):
        """Only allow HMAC-based JWT algorithms."""
        allowed = {"HS256", "HS384", "HS512"}
        if v not in allowed:
            raise ValueError(f"JWT algorithm must be one of {allowed}, got: {v}")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return str(v or "INFO").upper()

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        if not self.cors_origins_raw:
            return []
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]

    @property
    def admin_roles(self) -> List[str]:
        """Parse admin roles from comma-separated string (lower-cased)."""
        if not self.admin_roles_raw:
            return []
        return [role.strip().lower() for role in self.admin_roles_raw.split(",") if role.strip()]


@lru_cache()
def get_web_settings() -> WebSettings:
    """Get cached web settings."""
    return WebSettings()
