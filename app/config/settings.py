import json as json_mod
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RELAY_", case_sensitive=False)

    env: str = "dev"
    app_name: str = "assistant-relay"
    app_version: str = "1.0.0"
    log_level: str = "INFO"

    # Upstream agent
    agent_backend: str = Field(default="stub", description="stub or claude")
    agent_max_turns: int = Field(default=10, ge=1)
    agent_tool_preset: str = "claude_code"
    agent_bypass_permissions: bool = True
    agent_include_partial_messages: bool = True
    agent_cwd: Path | None = None
    assistant_preamble: str | None = None

    # Telemetry
    telemetry_enabled: bool = True
    telemetry_max_requests: int = 1000
    telemetry_max_breadcrumbs: int = 100
    telemetry_redact_keys: str = "key,token,secret,authorization,password"
    telemetry_export_endpoint: str | None = None
    telemetry_export_timeout_s: float = 2.0
    telemetry_export_headers: str = ""

    metrics_enabled: bool = True

    @property
    def agent_backend_normalized(self) -> str:
        return self.agent_backend.strip().lower()

    @property
    def agent_working_directory(self) -> Path:
        return self.agent_cwd if self.agent_cwd is not None else Path.cwd()

    @property
    def telemetry_redact_key_set(self) -> set[str]:
        return {
            item.strip().lower()
            for item in self.telemetry_redact_keys.split(",")
            if item.strip()
        }

    @property
    def telemetry_export_header_map(self) -> dict[str, str]:
        raw = self.telemetry_export_headers.strip()
        if not raw:
            return {}
        if raw.startswith("{"):
            try:
                parsed = json_mod.loads(raw)
            except json_mod.JSONDecodeError:
                return {}
            if not isinstance(parsed, dict):
                return {}
            return {
                str(key).strip(): str(value).strip()
                for key, value in parsed.items()
                if str(key).strip()
            }
        result: dict[str, str] = {}
        for item in raw.split(","):
            item = item.strip()
            if ":" not in item:
                continue
            key, value = item.split(":", 1)
            key = key.strip()
            if not key:
                continue
            result[key] = value.strip()
        return result


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
