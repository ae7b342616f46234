"""
Configuration Validation Module
Checks pipeline credentials and backends on startup
"""
import os
import logging
from typing import List, Optional, Tuple
from dataclasses import dataclass

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of a configuration validation check."""
    component: str
    setting: str
    is_valid: bool
    message: str


class ConfigValidator:
    """
    Validates pipeline configuration at startup.

    Missing collaborator keys disable the audit worker, a missing broker
    leaves new campaigns pending; both are errors only in strict mode.
    """

    # Always needed for the worker to process jobs
    WORKER_ENV_VARS = [
        ("transcription", "DEEPGRAM_API_KEY", "Deepgram transcription"),
        ("scoring", "GROQ_API_KEY", "Groq scoring"),
    ]

    SUPABASE_ENV_VARS = [
        ("SUPABASE_URL", "Supabase"),
        ("SUPABASE_SERVICE_KEY", "Supabase"),
    ]

    def __init__(self, settings: Optional[Settings] = None, strict: bool = False):
        """
        Initialize validator.

        Args:
            settings: Settings to check, defaults to the cached settings
            strict: If True, treat warnings as errors
        """
        self.settings = settings or get_settings()
        self.strict = strict
        self.results: List[ValidationResult] = []

    def validate_all(self) -> Tuple[bool, List[ValidationResult]]:
        """
        Validate all configuration.

        Returns:
            Tuple of (all_valid, list of results)
        """
        self.results = []

        for component, env_var, description in self.WORKER_ENV_VARS:
            if os.getenv(env_var):
                self._add_success(component, env_var, f"{description} configured")
            else:
                self._add_warning(component, env_var,
                    f"{description} requires {env_var}, audit worker will be disabled")

        needs_supabase = (
            self.settings.campaign_store == "supabase"
            or self.settings.audio_storage == "supabase"
        )
        if needs_supabase:
            for env_var, description in self.SUPABASE_ENV_VARS:
                if os.getenv(env_var):
                    self._add_success("database", env_var, f"{description} configured")
                else:
                    self._add_error("database", env_var, f"{description} requires {env_var} to be set")
        elif self.settings.campaign_store == "memory":
            self._add_warning("database", "CAMPAIGN_STORE",
                "in-memory campaign store, campaigns are lost on restart")

        if os.getenv("REDIS_URL"):
            self._add_success("queue", "REDIS_URL", "Redis queue configured")
        else:
            self._add_warning("queue", "REDIS_URL",
                f"not set, using default {self.settings.redis_url}")

        if self.settings.admin_panel_url and self.settings.instance_api_key:
            self._add_success("reporting", "ADMIN_PANEL_URL", "Usage reporting configured")

        errors = [r for r in self.results if not r.is_valid]
        return len(errors) == 0, self.results

    def _add_success(self, component: str, setting: str, message: str):
        self.results.append(ValidationResult(
            component=component,
            setting=setting,
            is_valid=True,
            message=message
        ))

    def _add_error(self, component: str, setting: str, message: str):
        self.results.append(ValidationResult(
            component=component,
            setting=setting,
            is_valid=False,
            message=message
        ))

    def _add_warning(self, component: str, setting: str, message: str):
        """Add warning validation result."""
        self.results.append(ValidationResult(
            component=component,
            setting=setting,
            is_valid=not self.strict,  # Warnings become errors in strict mode
            message=f"WARNING: {message}"
        ))

    def log_results(self):
        """Log all validation results."""
        for r in self.results:
            if not r.is_valid:
                logger.error(f"  ✗ [{r.component}] {r.message}")
            elif r.message.startswith("WARNING"):
                logger.warning(f"  ⚠ [{r.component}] {r.message}")
            else:
                logger.info(f"  ✓ [{r.component}] {r.message}")

    def get_error_summary(self) -> Optional[str]:
        """Get summary of errors for exception message."""
        errors = [r for r in self.results if not r.is_valid]
        if not errors:
            return None

        lines = ["Configuration errors:"]
        for r in errors:
            lines.append(f"  - {r.setting}: {r.message}")
        return "\n".join(lines)


def validate_config_on_startup(strict: bool = False) -> None:
    """
    Validate configuration at startup.

    Raises:
        RuntimeError: If required configuration is missing
    """
    validator = ConfigValidator(strict=strict)
    all_valid, _ = validator.validate_all()
    validator.log_results()

    if not all_valid:
        raise RuntimeError(validator.get_error_summary())

    logger.info("Configuration validated successfully")
