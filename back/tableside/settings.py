from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    App configuration.

    Values come from `config.env` (or `.env`) at the repository root and the
    process environment. DATABASE_URL, when set, wins over the DB_* parts.
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

    database_url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")
    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="tableside", validation_alias="DB_USER")
    db_password: str = Field(default="tableside", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="tableside", validation_alias="DB_NAME")

    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    realtime_enabled: bool = Field(default=True, validation_alias="REALTIME_ENABLED")

    secret_key: str = Field(default="CHANGE_THIS_IN_PRODUCTION", validation_alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", validation_alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")

    # Guest facing
    guest_token_expire_minutes: int = Field(default=240, validation_alias="GUEST_TOKEN_EXPIRE_MINUTES")
    guest_request_timeout_seconds: float = Field(default=5.0, validation_alias="GUEST_REQUEST_TIMEOUT_SECONDS")
    pin_length: int = Field(default=4, validation_alias="PIN_LENGTH")

    # ws-bridge -> API callback for table token validation
    api_url: str = Field(default="http://localhost:8020", validation_alias="API_URL")

    cors_origins: str = Field(
        default="http://localhost:4200",
        validation_alias="CORS_ORIGINS"
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # SQLModel uses SQLAlchemy under the hood; this uses the psycopg driver (v3).
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
