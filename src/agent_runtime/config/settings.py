"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "agent-runtime"
    app_env: str = "dev"
    app_debug: bool = False

    max_iterations: int = Field(default=15, ge=1)
    retry_delay_s: float = Field(default=2.0, ge=0.0)
    iteration_delay_s: float = Field(default=1.0, ge=0.0)
    auto_route_subagents: bool = True
    smart_compaction: bool = False

    model: str = "deepseek-chat"
    model_context_tokens: int = Field(default=64000, ge=1024)
    reserved_tokens: int = Field(default=8000, ge=0)
    max_context_chars: int = Field(default=400000, ge=1000)

    llm_provider: str = "deepseek"
    llm_base_url: str = "https://api.deepseek.com/v1"
    llm_api_key: str = ""
    llm_timeout_s: float = Field(default=60.0, ge=0.5)
    llm_max_retries: int = Field(default=5, ge=1)
    llm_backoff_s: float = Field(default=3.0, ge=0.0)
    llm_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=4096, ge=1)

    credential_cooldown_s: float = Field(default=300.0, ge=0.0)
    credential_max_wait_s: float = Field(default=30.0, ge=0.0)
    load_env_credentials: bool = True

    approval_mode: str = "ask"
    approval_timeout_s: float = Field(default=300.0, gt=0.0)

    subagents_path: str = "subagents.json"
    dynamic_subagents_path: str = "subagents.dynamic.json"
    run_workers: int = Field(default=4, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="AGENT_RUNTIME_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
        protected_namespaces=(),
    )

    def resolved_llm_api_key(self) -> str:
        return self.llm_api_key or os.getenv("DEEPSEEK_API_KEY", "")

    def resolved_approval_mode(self) -> str:
        mode = self.approval_mode.lower().strip()
        return mode if mode in {"ask", "auto", "yolo"} else "ask"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
