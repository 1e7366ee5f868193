from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    dev_mode: bool = Field(default=False, alias="DEV_MODE")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    quiet_logging_if_successful: bool = Field(default=False, alias="QUIET_LOGGING_IF_SUCCESSFUL")
    enable_metrics_endpoint: bool = Field(default=True, alias="ENABLE_METRICS_ENDPOINT")

    # Debug endpoint access control.
    allow_debug_ip: str = Field(default="", alias="TS_ALLOW_DEBUG_IP")
    debug_key_path: str = Field(default="", alias="TS_DEBUG_KEY_PATH")

    @property
    def debug_key_file(self) -> Path | None:
        if not self.debug_key_path:
            return None
        return Path(self.debug_key_path)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
