# /backend/trustgate/core/config.py

import json
import logging
import secrets
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    Field,
    PostgresDsn,
    RedisDsn,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_HIGH_RISK_COUNTRIES = ["KP", "IR", "SY", "CU", "RU"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", case_sensitive=False
    )

    # --- Environment & Debug ---
    ENVIRONMENT: Literal["development", "test", "staging", "production"] = Field(
        default="development", validation_alias="APP_ENV"
    )
    DEBUG: bool = Field(default=False, validation_alias=AliasChoices("DEBUG_MODE", "DEBUG"))
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
    )

    # --- Core Application Settings ---
    APP_NAME: str = Field(default="TrustGate", validation_alias="APP_NAME")
    APP_VERSION: str = Field(default="0.1.0", validation_alias="APP_VERSION")
    APP_DESCRIPTION: str = Field(
        default="Two-factor authentication, login anomaly detection and IP blacklisting",
        validation_alias="APP_DESCRIPTION",
    )
    API_V1_STR: str = Field(default="/api/v1", validation_alias="API_V1_STR")
    SERVER_HOST: str = Field(default="0.0.0.0", validation_alias="SERVER_HOST")
    SERVER_PORT: int = Field(default=8000, validation_alias="SERVER_PORT")
    backend_cors_origins_env_str: str | None = Field(
        default=None, validation_alias="BACKEND_CORS_ORIGINS"
    )

    # --- Token verification (tokens are issued by the identity service) ---
    SECRET_KEY: str = Field(validation_alias=AliasChoices("JWT_SECRET_KEY", "SECRET_KEY"))
    ALGORITHM: str = Field(default="HS256", validation_alias="ALGORITHM")

    # --- Secret-at-rest protection ---
    ENCRYPTION_KEY: str | None = Field(
        default=None,
        description="64 hex characters (32 bytes) used to encrypt TOTP secrets at rest",
        validation_alias="ENCRYPTION_KEY",
    )

    # --- Two-factor authentication ---
    TWO_FACTOR_ISSUER: str = Field(default="TrustGate", validation_alias="TWO_FACTOR_ISSUER")
    TOTP_TIME_STEP_SECONDS: int = Field(default=30, validation_alias="TOTP_TIME_STEP_SECONDS")
    TOTP_VALID_WINDOW: int = Field(default=1, validation_alias="TOTP_VALID_WINDOW")
    BACKUP_CODE_COUNT: int = Field(default=10, validation_alias="BACKUP_CODE_COUNT")

    # --- Geolocation provider ---
    GEOLOCATION_API_URL: str = Field(
        default="http://ip-api.com/json/{ip}", validation_alias="GEOLOCATION_API_URL"
    )
    GEOLOCATION_TIMEOUT_SECONDS: float = Field(
        default=5.0, gt=0, le=5, validation_alias="GEOLOCATION_TIMEOUT_SECONDS"
    )
    GEOLOCATION_CACHE_TTL_HOURS: int = Field(
        default=24, validation_alias="GEOLOCATION_CACHE_TTL_HOURS"
    )

    # --- Anomaly detection ---
    high_risk_countries_env_str: str | None = Field(
        default=None,
        description="JSON array or comma-separated ISO country codes",
        validation_alias="HIGH_RISK_COUNTRIES",
    )
    ANOMALY_HISTORY_SIZE: int = Field(default=5, validation_alias="ANOMALY_HISTORY_SIZE")
    ANOMALY_ESCALATION_THRESHOLD: int = Field(
        default=5,
        description="Anomalous logins from one IP within the window before it is blacklisted",
        validation_alias="ANOMALY_ESCALATION_THRESHOLD",
    )
    ANOMALY_ESCALATION_WINDOW_MINUTES: int = Field(
        default=60, validation_alias="ANOMALY_ESCALATION_WINDOW_MINUTES"
    )
    CITY_CHANGE_MIN_KM: float = Field(default=100.0, validation_alias="CITY_CHANGE_MIN_KM")
    ANOMALY_RULES: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description=(
            "JSON object overriding anomaly rules, e.g. "
            '{"CITY_CHANGE": {"severity": "MEDIUM", "risk_score": 0.5}}'
        ),
        validation_alias="ANOMALY_RULES",
    )
    # Logins outside [QUIET_HOURS_END, QUIET_HOURS_START] (server clock) are unusual
    ANOMALY_QUIET_HOURS_START: int = Field(
        default=23, ge=0, le=23, validation_alias="ANOMALY_QUIET_HOURS_START"
    )
    ANOMALY_QUIET_HOURS_END: int = Field(
        default=6, ge=0, le=23, validation_alias="ANOMALY_QUIET_HOURS_END"
    )

    # --- IP blacklist ---
    BLACKLIST_DURATIONS_MINUTES: dict[str, int] = Field(
        default_factory=lambda: {
            "LOGIN_FAILED": 30,
            "RATE_LIMIT_EXCEEDED": 60,
            "UNAUTHORIZED_ACCESS": 120,
            "FILE_UPLOAD_VIOLATION": 240,
        },
        validation_alias="BLACKLIST_DURATIONS_MINUTES",
    )
    BLACKLIST_DEFAULT_DURATION_MINUTES: int = Field(
        default=60, validation_alias="BLACKLIST_DEFAULT_DURATION_MINUTES"
    )
    BLACKLIST_THRESHOLDS: dict[str, int] = Field(
        default_factory=lambda: {
            "LOGIN_FAILED": 5,
            "RATE_LIMIT_EXCEEDED": 3,
            "FILE_UPLOAD_VIOLATION": 3,
        },
        validation_alias="BLACKLIST_THRESHOLDS",
    )
    ACTIVITY_WINDOW_MINUTES: int = Field(default=15, validation_alias="ACTIVITY_WINDOW_MINUTES")
    BLACKLIST_SWEEP_INTERVAL_SECONDS: int = Field(
        default=3600, validation_alias="BLACKLIST_SWEEP_INTERVAL_SECONDS"
    )

    # --- Audit log ---
    AUDIT_RETENTION_DAYS: int = Field(default=90, validation_alias="AUDIT_RETENTION_DAYS")
    AUDIT_QUEUE_MAX_SIZE: int = Field(default=1000, validation_alias="AUDIT_QUEUE_MAX_SIZE")
    SECURITY_LOG_PATH: str = Field(
        default="logs/security.log", validation_alias="SECURITY_LOG_PATH"
    )

    # --- Rate limiting ---
    RATE_LIMIT_2FA_VERIFY: str = Field(default="10/minute", validation_alias="RATE_LIMIT_2FA_VERIFY")

    # --- Database Settings ---
    PRIMARY_DATABASE_URL_ENV: str | None = Field(default=None, validation_alias="DATABASE_URL")
    POSTGRES_SERVER: str = Field(default="db", validation_alias="POSTGRES_SERVER")
    POSTGRES_USER: str = Field(default="trustgate", validation_alias="POSTGRES_USER")
    POSTGRES_PASSWORD: str = Field(default="trustgate", validation_alias="POSTGRES_PASSWORD")
    POSTGRES_DB: str = Field(default="trustgate", validation_alias="POSTGRES_DB")
    POSTGRES_PORT: int = Field(default=5432, validation_alias="POSTGRES_PORT")
    DB_ECHO: bool = Field(default=False, validation_alias="DB_ECHO")
    STORE_TIMEOUT_SECONDS: float = Field(default=5.0, validation_alias="STORE_TIMEOUT_SECONDS")

    # --- Celery & Redis Settings ---
    REDIS_HOST: str = Field(default="redis", validation_alias="REDIS_HOST")
    REDIS_PORT: int = Field(default=6379, validation_alias="REDIS_PORT")
    CELERY_BROKER_URL_ENV: RedisDsn | None = Field(
        default=None, validation_alias="CELERY_BROKER_URL"
    )
    CELERY_RESULT_BACKEND_ENV: RedisDsn | None = Field(
        default=None, validation_alias="CELERY_RESULT_BACKEND"
    )
    TIMEZONE: str = Field(default="UTC", validation_alias="CELERY_TIMEZONE")

    @staticmethod
    def _parse_string_list(value: str | None) -> list[str]:
        """Parse a JSON array or a comma-separated string from an env var."""
        if not value or not value.strip():
            return []
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            parsed = value.split(",")
        if not isinstance(parsed, list):
            parsed = [parsed]
        return [str(item).strip() for item in parsed if str(item).strip()]

    @property
    def HIGH_RISK_COUNTRIES(self) -> list[str]:
        if self.high_risk_countries_env_str is None:
            return list(DEFAULT_HIGH_RISK_COUNTRIES)
        return [code.upper() for code in self._parse_string_list(self.high_risk_countries_env_str)]

    @property
    def BACKEND_CORS_ORIGINS(self) -> list[str]:
        return [o.rstrip("/") for o in self._parse_string_list(self.backend_cors_origins_env_str)]

    @field_validator("BLACKLIST_DURATIONS_MINUTES", "BLACKLIST_THRESHOLDS", mode="before")
    @classmethod
    def parse_activity_map(cls, v: str | dict | None) -> dict | None:
        """Accept a JSON object string for per-activity tables."""
        if isinstance(v, str):
            parsed = json.loads(v)
            if not isinstance(parsed, dict):
                raise ValueError("Expected a JSON object mapping activity to minutes")
            return {str(k).upper(): int(val) for k, val in parsed.items()}
        return v

    @field_validator("ANOMALY_RULES", mode="before")
    @classmethod
    def parse_anomaly_rules(cls, v: str | dict | None) -> dict | None:
        """Accept a JSON object of anomaly type -> {severity?, risk_score?}."""
        if isinstance(v, str):
            v = json.loads(v) if v.strip() else {}
        if not isinstance(v, dict):
            raise ValueError("Expected a JSON object mapping anomaly type to a rule")
        rules = {}
        for anomaly_type, rule in v.items():
            if not isinstance(rule, dict) or not set(rule) <= {"severity", "risk_score"}:
                raise ValueError(
                    f"Rule for {anomaly_type} may only set 'severity' and 'risk_score'"
                )
            rule = dict(rule)
            if "severity" in rule:
                rule["severity"] = str(rule["severity"]).upper()
            if "risk_score" in rule:
                rule["risk_score"] = float(rule["risk_score"])
                if not 0.0 <= rule["risk_score"] <= 1.0:
                    raise ValueError(f"risk_score for {anomaly_type} must be between 0 and 1")
            rules[str(anomaly_type).upper()] = rule
        return rules

    @field_validator("ENCRYPTION_KEY")
    @classmethod
    def validate_encryption_key(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        try:
            raw = bytes.fromhex(v)
        except ValueError as e:
            raise ValueError("ENCRYPTION_KEY must be a 64-character hex string") from e
        if len(raw) != 32:
            raise ValueError("ENCRYPTION_KEY must be a 64-character hex string (32 bytes)")
        return v

    @model_validator(mode="after")
    def _process_debug_and_keys(self) -> "Settings":
        if self.ENCRYPTION_KEY is None:
            if self.ENVIRONMENT in ("staging", "production"):
                raise ValueError("ENCRYPTION_KEY is required outside development/test")
            self.ENCRYPTION_KEY = secrets.token_hex(32)
            logger.warning(
                "ENCRYPTION_KEY not set. Generated an ephemeral key; "
                "stored 2FA secrets will not survive a restart."
            )

        if self.DEBUG and self.LOG_LEVEL != "DEBUG":
            logger.info("DEBUG mode is ON. Overriding LOG_LEVEL to DEBUG.")
            self.LOG_LEVEL = "DEBUG"
        return self

    @computed_field(repr=False)
    @property
    def ASYNC_SQLALCHEMY_DATABASE_URL(self) -> str:
        if self.PRIMARY_DATABASE_URL_ENV:
            url = self.PRIMARY_DATABASE_URL_ENV
            if url.startswith("postgresql://"):
                return url.replace("postgresql://", "postgresql+asyncpg://", 1)
            return url
        return str(
            PostgresDsn(
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )
        )

    @property
    def CELERY_BROKER_URL(self) -> RedisDsn | None:
        if self.CELERY_BROKER_URL_ENV:
            return self.CELERY_BROKER_URL_ENV
        try:
            return RedisDsn(f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/0")
        except Exception as e:
            logger.error(f"Failed to build CELERY_BROKER_URL from components: {e}")
            return None

    @property
    def CELERY_RESULT_BACKEND(self) -> RedisDsn | None:
        if self.CELERY_RESULT_BACKEND_ENV:
            return self.CELERY_RESULT_BACKEND_ENV
        try:
            return RedisDsn(f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/1")
        except Exception as e:
            logger.error(f"Failed to build CELERY_RESULT_BACKEND from components: {e}")
            return None


settings = Settings()
