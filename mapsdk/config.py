from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """SDK configuration loaded from environment"""

    # API origin that first-party locators are rewritten onto
    api_url: str = Field(default="https://api.example-mapservice.com", alias="API_URL")
    events_url: str = Field(
        default="https://events.example-mapservice.com/events/v2",
        alias="EVENTS_URL",
        description="Telemetry endpoint",
    )

    # Read at the time of every operation, so rotating it mid-session is observed
    access_token: Optional[str] = Field(default=None, alias="ACCESS_TOKEN")
    require_access_token: bool = Field(default=True, alias="REQUIRE_ACCESS_TOKEN")

    sdk_identifier: str = Field(default="mapsdk-python", alias="SDK_IDENTIFIER")
    sdk_version: str = Field(default="1.0.0", alias="SDK_VERSION")

    # Device capabilities, only used when rewriting tile locators
    device_pixel_ratio: float = Field(default=1.0, alias="DEVICE_PIXEL_RATIO", gt=0)
    supports_webp: bool = Field(default=False, alias="SUPPORTS_WEBP")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Application log level")
    http_client_timeout: float = Field(default=20.0, alias="HTTP_CLIENT_TIMEOUT", gt=0)

    # Event state goes to MongoDB when a connection string is given, memory otherwise
    mongodb_url: Optional[str] = Field(default=None, alias="MONGODB_URL")
    database_name: str = Field(default="mapsdk", alias="DATABASE_NAME")
    collection_name: str = Field(default="event_data", alias="COLLECTION_NAME")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_prefix="",
        populate_by_name=True,
    )

settings = Settings()
