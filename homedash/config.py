from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HOMEDASH_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # MQTT Configuration
    mqtt_broker: str = "127.0.0.1"
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_keepalive: int = 60
    mqtt_qos: int = 0
    mqtt_client_id: str = "homedash"
    mqtt_catch_all_topic: str = "#"  # Everything, so unknown topics reach auto-detect
    message_queue_size: int = 1000

    # Database Configuration
    database_url: str = "sqlite+aiosqlite:///./homedash.db"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8002

    # Dashboard owner (session handling lives outside this service)
    dashboard_user_id: str = "default"

    # Device liveness
    sensor_timeout_default_seconds: float = 60.0
    sensor_timeout_cache_seconds: float = 300.0  # 5 minutes

    # Reconciliation
    recent_message_limit: int = 100
    cleanup_debounce_seconds: float = 1.0

    # Optional JSON file overriding/extending the built-in device type table
    device_types_path: Optional[str] = None

    # Logging
    log_level: str = "INFO"


settings = Settings()
