from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL, make_url


class TargetSettings(BaseModel):
    """
    One write target. Every target gets its own connection, locks and
    identifier cache; targets share nothing.
    """

    HOST: str = "localhost"
    PORT: int = Field(default=3306, ge=1, le=65535)
    USER: str = "collectd"
    PASSWORD: str = ""
    DATABASE: Optional[str] = "collectd"

    # Full SQLAlchemy URL, overrides HOST/PORT/USER/PASSWORD when set.
    # DATABASE is still selected after connecting unless it is null.
    URL: Optional[str] = None

    @property
    def db_url(self) -> URL:
        if self.URL:
            return make_url(self.URL)
        # No database in the URL: it is selected once the connection is up.
        return URL.create(
            "mysql+pymysql",
            username=self.USER,
            password=self.PASSWORD or None,
            host=self.HOST,
            port=self.PORT,
        )

    @property
    def name(self) -> str:
        return f"writer/{self.HOST}/{self.PORT}"


class Settings(BaseSettings):
    # App
    ENV: Literal["development", "production"] = "development"
    LOG_LEVEL: str = "INFO"

    # Provision tables on startup. Development only, there are no migrations.
    CREATE_SCHEMA: bool = False

    # Targets, as a JSON list: TARGETS='[{"HOST": "db1", "DATABASE": "collectd"}]'
    TARGETS: List[TargetSettings] = Field(default_factory=lambda: [TargetSettings()])

    # Observability (0 disables the scrape endpoint)
    PROMETHEUS_PORT: int = 8001

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
