"""Database configuration.

SQLite through aiosqlite for development and tests, PostgreSQL through
asyncpg in production. Values come from DB_-prefixed environment
variables or a .env file.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

SQLITE_DRIVER = "sqlite+aiosqlite"
POSTGRES_DRIVER = "postgresql+asyncpg"


class DatabaseSettings(BaseSettings):
    """
    Connection settings for the CRM store.

    Example environment variables:
        DB_DRIVER=postgresql+asyncpg
        DB_HOST=db
        DB_NAME=travel_crm
        DB_USER=crm
        DB_PASSWORD=secret
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    driver: str = Field(default=SQLITE_DRIVER, description="SQLAlchemy async driver name")

    host: str = Field(default="localhost")
    port: int = Field(default=5432)
    name: str = Field(default="travel_crm")
    user: str = Field(default="")
    password: SecretStr = Field(default=SecretStr(""))

    sqlite_path: Path = Field(
        default=Path("data/travel_crm.db"),
        description="Database file when running on SQLite"
    )

    pool_size: int = Field(default=10, ge=1, le=100)
    max_overflow: int = Field(default=20, ge=0, le=100)
    pool_timeout: int = Field(default=30, ge=1)
    pool_recycle: int = Field(default=1800, ge=60)
    pool_pre_ping: bool = Field(default=True)

    echo_sql: bool = Field(default=False, description="Log every SQL statement")
    query_timeout: int = Field(default=30, ge=1, description="Statement timeout in seconds")

    @computed_field
    @property
    def is_sqlite(self) -> bool:
        return self.driver.lower().startswith("sqlite")

    @computed_field
    @property
    def is_postgres(self) -> bool:
        return self.driver.lower().startswith("postgres")

    @computed_field
    @property
    def async_url(self) -> str:
        """Connection URL; creates the SQLite file's directory on first use."""
        if self.is_sqlite:
            self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            return f"{SQLITE_DRIVER}:///{self.sqlite_path.absolute()}"

        credentials = ""
        if self.user:
            secret = self.password.get_secret_value()
            credentials = f"{self.user}:{secret}@" if secret else f"{self.user}@"
        return f"{self.driver}://{credentials}{self.host}:{self.port}/{self.name}"

    def describe(self) -> str:
        """Log-safe description of the target database."""
        if self.is_sqlite:
            return f"{self.driver} {self.sqlite_path}"
        return f"{self.driver} {self.host}:{self.port}/{self.name} pool={self.pool_size}"

    def get_connect_args(self) -> dict:
        """Driver-specific connect() arguments."""
        if self.is_sqlite:
            return {"check_same_thread": False, "timeout": self.query_timeout}
        return {"command_timeout": self.query_timeout}


@lru_cache
def get_database_settings() -> DatabaseSettings:
    """Get cached database settings loaded from environment."""
    return DatabaseSettings()
