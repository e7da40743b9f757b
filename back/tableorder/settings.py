from decimal import Decimal
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    App configuration.

    Values come from `config.env` (non-dot env file) or `.env`, looked up in the
    repository root first and then in the current working directory.
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="tableorder", validation_alias="DB_USER")
    db_password: str = Field(default="tableorder", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="tableorder", validation_alias="DB_NAME")
    # Full SQLAlchemy URL; when set it wins over the DB_* parts (tests use sqlite)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")

    midtrans_server_key: str = Field(default="", validation_alias="MIDTRANS_SERVER_KEY")
    midtrans_is_production: bool = Field(default=False, validation_alias="MIDTRANS_IS_PRODUCTION")
    midtrans_timeout_seconds: float = Field(default=10.0, validation_alias="MIDTRANS_TIMEOUT_SECONDS")
    frontend_url: str = Field(default="http://localhost:5173", validation_alias="FRONTEND_URL")

    smtp_host: str = Field(default="smtp.gmail.com", validation_alias="SMTP_HOST")
    smtp_port: int = Field(default=587, validation_alias="SMTP_PORT")
    smtp_user: str = Field(default="", validation_alias="SMTP_USER")
    smtp_password: str = Field(default="", validation_alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(default=True, validation_alias="SMTP_USE_TLS")
    email_from: str = Field(default="noreply@tableorder.local", validation_alias="EMAIL_FROM")
    email_from_name: str = Field(default="Table Order", validation_alias="EMAIL_FROM_NAME")

    # Business rules
    business_timezone: str = Field(default="Asia/Jakarta", validation_alias="BUSINESS_TIMEZONE")
    session_window_hours: int = Field(default=2, validation_alias="SESSION_WINDOW_HOURS")
    customer_retention_hours: int = Field(default=24, validation_alias="CUSTOMER_RETENTION_HOURS")
    default_service_charge_rate: Decimal = Field(
        default=Decimal("0.07"), validation_alias="DEFAULT_SERVICE_CHARGE_RATE"
    )
    default_tax_rate: Decimal = Field(default=Decimal("0.10"), validation_alias="DEFAULT_TAX_RATE")
    order_create_max_attempts: int = Field(default=5, validation_alias="ORDER_CREATE_MAX_ATTEMPTS")

    # CORS configuration
    cors_origins: str = Field(
        default="http://localhost:5173",
        validation_alias="CORS_ORIGINS"
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # SQLModel uses SQLAlchemy under the hood; this uses the psycopg driver (v3).
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @property
    def midtrans_snap_url(self) -> str:
        if self.midtrans_is_production:
            return "https://app.midtrans.com/snap/v1/transactions"
        return "https://app.sandbox.midtrans.com/snap/v1/transactions"


settings = Settings()
