from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from jfsplitter.domain.proxy import UPSTREAM_PRIMARY, UPSTREAM_SECONDARY, UpstreamTarget


SplitMode = Literal["mirror_writes", "mirror_all", "failover"]
AuthMode = Literal["passthrough", "upstream_tokens"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "jfsplitter"
    log_level: str = "INFO"

    # Base addresses of the two media servers; paths are appended verbatim.
    primary_url: str = "http://10.8.0.2:8096"
    secondary_url: str = "http://10.8.0.1:8096"
    # Service API keys injected under upstream_tokens auth mode.
    primary_token: str = ""
    secondary_token: str = ""

    split_mode: SplitMode = "mirror_writes"
    auth_mode: AuthMode = "upstream_tokens"

    # Total deadline for one upstream round trip, body read included.
    upstream_timeout_ms: int = 15000

    # JSON document holding the primary<->secondary user id table.
    usermap_path: str = "/app/user-map.json"

    # Identity fields of the MediaBrowser authorization header sent with service tokens.
    auth_client: str = "Seerr"
    auth_device: str = "Seerr"
    auth_device_id: str = "BOT_seerr"
    auth_version: str = "1.0.0"

    listen_host: str = "0.0.0.0"
    listen_port: int = 8095

    @field_validator("split_mode", "auth_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def primary_target(self) -> UpstreamTarget:
        return UpstreamTarget(name=UPSTREAM_PRIMARY, base_url=self.primary_url, token=self.primary_token)

    def secondary_target(self) -> UpstreamTarget:
        return UpstreamTarget(name=UPSTREAM_SECONDARY, base_url=self.secondary_url, token=self.secondary_token)


@lru_cache
def get_settings() -> Settings:
    return Settings()
