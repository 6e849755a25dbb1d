from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="ETA2WEATHER_", extra="ignore")

    app_name: str = "eta2weather"
    timezone: str = "Europe/Berlin"

    # Heating configuration file (watched for changes)
    config_path: str = Field(default="config/f_etacfg.json")

    # Storage: one eta2weather_<year>.db per calendar year
    data_dir: str = Field(default="db")

    # Logging
    log_file: str = "eta2weather.log"
    log_level: str = "INFO"

    # Ecowitt cloud API
    ecowitt_server: str = "api.ecowitt.net"
    ecowitt_application_key: str = ""
    ecowitt_api_key: str = ""
    ecowitt_mac: str = ""

    # HTTP
    http_timeout_seconds: float = 8.0

    # Leaf variable batching
    fetch_chunk_size: int = 5
    fetch_concurrency: int = 1
    fetch_chunk_delay_seconds: float = 0.1

    # Scheduling (milliseconds, same unit as t_update_timer)
    min_update_interval_ms: int = 60_000
    config_debounce_ms: int = 2_000

    # Memory guard
    memory_check_seconds: int = 300
    memory_ceiling_bytes: int = 1024 * 1024 * 1024
    retention_seconds: int = 24 * 3600


settings = Settings()
