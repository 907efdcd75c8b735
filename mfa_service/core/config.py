"""
Configuration management for mfa_service
Uses pydantic-settings for environment variable loading and validation
"""

from typing import Optional
from pydantic import Field, RedisDsn, validator
from pydantic_settings import BaseSettings

from mfa_service.core.exceptions import MfaConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "mfa_service"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development", env="ENVIRONMENT")
    DEBUG: bool = Field(default=False, env="DEBUG")

    # API
    API_V1_PREFIX: str = "/v1"

    # Database
    DATABASE_URL: str = Field(default="sqlite:///./mfa_service.db", env="DATABASE_URL")
    DATABASE_POOL_SIZE: int = Field(default=20, env="DATABASE_POOL_SIZE")
    DATABASE_MAX_OVERFLOW: int = Field(default=10, env="DATABASE_MAX_OVERFLOW")
    DATABASE_POOL_TIMEOUT: int = Field(default=30, env="DATABASE_POOL_TIMEOUT")
    DATABASE_STATEMENT_TIMEOUT_MS: int = Field(default=5000, env="DATABASE_STATEMENT_TIMEOUT_MS")

    # Redis
    REDIS_URL: RedisDsn = Field(default="redis://localhost:6379/0", env="REDIS_URL")
    REDIS_POOL_SIZE: int = Field(default=50, env="REDIS_POOL_SIZE")
    REDIS_SOCKET_TIMEOUT_SECONDS: float = Field(default=2.0, env="REDIS_SOCKET_TIMEOUT_SECONDS")

    # MFA
    MFA_ISSUER: str = Field(default="SmartStore AI", env="MFA_ISSUER")
    MFA_TOTP_VALID_WINDOW: int = Field(default=1, env="MFA_TOTP_VALID_WINDOW")
    MFA_CONFIRM_VALID_WINDOW: int = Field(default=2, env="MFA_CONFIRM_VALID_WINDOW")
    MFA_CODE_LENGTH: int = Field(default=6, env="MFA_CODE_LENGTH")
    MFA_CODE_VALIDITY_MINUTES: int = Field(default=5, env="MFA_CODE_VALIDITY_MINUTES")
    MFA_BACKUP_CODE_COUNT: int = Field(default=10, env="MFA_BACKUP_CODE_COUNT")
    MFA_BACKUP_CODE_LENGTH: int = Field(default=8, env="MFA_BACKUP_CODE_LENGTH")

    # Audit
    MFA_AUDIT_STREAM: str = Field(default="events:mfa.audit", env="MFA_AUDIT_STREAM")
    MFA_AUDIT_STREAM_MAXLEN: int = Field(default=100000, env="MFA_AUDIT_STREAM_MAXLEN")
    MFA_AUDIT_BUFFER_SIZE: int = Field(default=1000, env="MFA_AUDIT_BUFFER_SIZE")

    # Rate Limiting
    MFA_RATELIMIT_ENABLED: bool = Field(default=False, env="MFA_RATELIMIT_ENABLED")
    MFA_VERIFY_MAX_ATTEMPTS: int = Field(default=5, env="MFA_VERIFY_MAX_ATTEMPTS")
    MFA_VERIFY_WINDOW_SECONDS: int = Field(default=300, env="MFA_VERIFY_WINDOW_SECONDS")

    # SMS
    SMS_PROVIDER: str = Field(default="disabled", env="SMS_PROVIDER")  # 'twilio' or 'disabled'
    TWILIO_ACCOUNT_SID: Optional[str] = Field(default=None, env="TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN: Optional[str] = Field(default=None, env="TWILIO_AUTH_TOKEN")
    TWILIO_FROM_NUMBER: Optional[str] = Field(default=None, env="TWILIO_FROM_NUMBER")
    TWILIO_API_BASE_URL: str = Field(default="https://api.twilio.com/2010-04-01", env="TWILIO_API_BASE_URL")
    SMS_TIMEOUT_SECONDS: float = Field(default=10.0, env="SMS_TIMEOUT_SECONDS")

    # Email
    SMTP_HOST: str = Field(default="localhost", env="SMTP_HOST")
    SMTP_PORT: int = Field(default=587, env="SMTP_PORT")
    SMTP_USERNAME: Optional[str] = Field(default=None, env="SMTP_USERNAME")
    SMTP_PASSWORD: Optional[str] = Field(default=None, env="SMTP_PASSWORD")
    SMTP_FROM: str = Field(default="noreply@example.com", env="SMTP_FROM")
    SMTP_TLS: bool = Field(default=True, env="SMTP_TLS")
    SMTP_TIMEOUT_SECONDS: float = Field(default=10.0, env="SMTP_TIMEOUT_SECONDS")

    # Logging & Observability
    LOG_LEVEL: str = Field(default="INFO", env="LOG_LEVEL")
    LOG_FORMAT: str = Field(default="json", env="LOG_FORMAT")  # 'json' or 'text'

    @validator("MFA_ISSUER")
    def validate_issuer(cls, v):
        """Issuer is embedded in every provisioning URI"""
        if not v or not v.strip():
            raise ValueError("MFA_ISSUER must not be empty")
        if ":" in v:
            raise ValueError("MFA_ISSUER must not contain ':'")
        return v.strip()

    @validator("SMS_PROVIDER")
    def validate_sms_provider(cls, v):
        """Validate SMS provider"""
        allowed = ["twilio", "disabled"]
        if v.lower() not in allowed:
            raise ValueError(f"SMS_PROVIDER must be one of {allowed}")
        return v.lower()

    @validator("LOG_LEVEL")
    def validate_log_level(cls, v):
        """Validate log level"""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}")
        return v.upper()

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


def validate_settings(config: "Settings") -> None:
    """
    Fail-fast checks that need more than one field

    Called once at startup. Anything wrong here is a deployment mistake,
    not something a request can recover from.

    Raises:
        MfaConfigurationError: If the configuration cannot serve MFA traffic
    """
    if not 4 <= config.MFA_CODE_LENGTH <= 10:
        raise MfaConfigurationError("MFA_CODE_LENGTH must be between 4 and 10")

    if config.MFA_BACKUP_CODE_LENGTH < 6:
        raise MfaConfigurationError("MFA_BACKUP_CODE_LENGTH must be at least 6")

    if config.MFA_BACKUP_CODE_COUNT < 1:
        raise MfaConfigurationError("MFA_BACKUP_CODE_COUNT must be positive")

    if config.MFA_CODE_VALIDITY_MINUTES < 1:
        raise MfaConfigurationError("MFA_CODE_VALIDITY_MINUTES must be positive")

    if config.MFA_TOTP_VALID_WINDOW < 0 or config.MFA_CONFIRM_VALID_WINDOW < 0:
        raise MfaConfigurationError("TOTP valid windows must not be negative")

    if config.SMS_PROVIDER == "twilio":
        missing = [
            name for name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_FROM_NUMBER")
            if not getattr(config, name)
        ]
        if missing:
            raise MfaConfigurationError(
                f"SMS_PROVIDER=twilio requires {', '.join(missing)}"
            )


# Global settings instance
settings = Settings()
