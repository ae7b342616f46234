"""
Configuration Management
Loads settings from YAML files and environment variables
"""
import re
import yaml
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    environment: str = "development"
    debug: bool = True

    # API Settings
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = ["http://localhost:3000"]

    # Redis/Queue
    redis_url: str = "redis://localhost:6379"
    queue_name: str = "audit:jobs"

    # Worker pool
    queue_concurrency: int = 3
    queue_poll_interval_ms: int = 2000
    queue_worker_enabled: bool = True
    paused_requeue_delay_ms: int = 2000
    reconcile_interval_seconds: int = 60

    # Retry policy
    max_retries: int = 3
    retry_delay_ms: int = 1000
    retry_backoff_multiplier: float = 2
    max_retry_delay_ms: int = 60000

    # Campaign limits
    max_bulk_rows: int = 10000
    default_page_size: int = 50

    # Collaborator timeouts
    transcription_timeout_seconds: float = 120.0
    scoring_timeout_seconds: float = 120.0

    # Backends
    campaign_store: str = "supabase"  # "supabase" | "memory"
    audio_storage: str = "local"  # "local" | "supabase"
    uploads_dir: str = "uploads"
    audio_bucket: str = "recordings"

    # Usage reporting (admin panel "phone home")
    admin_panel_url: Optional[str] = None
    instance_api_key: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance"""
    return Settings()


ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")


class ConfigManager:
    """
    Provider configuration for the audit pipeline.

    Reads config/default.yaml, then config/<environment>.yaml on top of it.
    `${VAR}` references are expanded from the environment; unset variables
    are left as-is so providers can report them as missing.
    """

    def __init__(self, env: str = "development", config_dir: Optional[Path] = None):
        self.env = env
        self.config_dir = config_dir or Path(__file__).parent.parent.parent / "config"
        self._config: Dict[str, Any] = {}

        for name in ("default.yaml", f"{env}.yaml"):
            path = self.config_dir / name
            if path.exists():
                with open(path, "r") as f:
                    self._merge(self._config, yaml.safe_load(f) or {})

        self._config = self._expand(self._config)

    def _merge(self, base: Dict, override: Dict) -> None:
        for key, value in override.items():
            if isinstance(base.get(key), dict) and isinstance(value, dict):
                self._merge(base[key], value)
            else:
                base[key] = value

    def _expand(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self._expand(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._expand(v) for v in value]
        if isinstance(value, str):
            return ENV_PATTERN.sub(lambda m: os.getenv(m.group(1), m.group(0)), value)
        return value

    def get(self, key_path: str, default: Any = None) -> Any:
        """Dotted lookup, e.g. get("providers.scoring.active")"""
        value = self._config
        for key in key_path.split("."):
            if not isinstance(value, dict) or key not in value:
                return default
            value = value[key]
        return value

    def get_active_provider(self, provider_type: str) -> str:
        """
        Name of the active provider for "transcription" or "scoring".

        TRANSCRIPTION_PROVIDER / SCORING_PROVIDER override the YAML choice.
        """
        active = os.getenv(f"{provider_type.upper()}_PROVIDER") or self.get(f"providers.{provider_type}.active")
        if not active:
            raise ValueError(f"No active {provider_type} provider configured")
        return active

    def get_provider_config(self, provider_type: str) -> Dict:
        """Options of the active provider (empty if the YAML has none)"""
        active = self.get_active_provider(provider_type)
        return dict(self.get(f"providers.{provider_type}.{active}", {}) or {})
