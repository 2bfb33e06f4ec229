import logging
import os
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigError
from .models import RiskLevel

ENV_PREFIX = "PERSISTGUARD_"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

DEFAULT_TRUSTED_PUBLISHERS = [
    "microsoft", "apple", "google", "mozilla", "adobe",
    "intel", "nvidia", "advanced micro devices", "realtek", "logitech",
]
DEFAULT_TRUSTED_PATHS = ["/System/Library/", "/usr/libexec/"]


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


class EngineConfig(BaseModel):
    command_timeout: float = Field(10.0, ge=1, le=120)
    hash_min_risk: RiskLevel = RiskLevel.MEDIUM
    max_parallel_hashing: int = Field(4, ge=1, le=64)
    include_vendor_entries: bool = False
    disabled_probes: List[str] = Field(default_factory=list)
    history_limit: int = Field(20, ge=1)
    home_dir: Optional[str] = None

    @field_validator("disabled_probes", mode="before")
    @classmethod
    def split_disabled(cls, value: Any) -> Any:
        return _split_csv(value)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: Optional[str] = None

    @field_validator("level")
    @classmethod
    def known_level(cls, value: str) -> str:
        if not isinstance(logging.getLevelName(value.upper()), int):
            raise ValueError(f"unknown log level '{value}'")
        return value.upper()


class ThreatIntelConfig(BaseModel):
    files: List[str] = Field(default_factory=list)
    malicious_hashes: List[str] = Field(default_factory=list)
    malicious_domains: List[str] = Field(default_factory=list)
    trusted_publishers: List[str] = Field(default_factory=lambda: list(DEFAULT_TRUSTED_PUBLISHERS))
    trusted_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_TRUSTED_PATHS))

    @field_validator(
        "files", "malicious_hashes", "malicious_domains", "trusted_publishers", "trusted_paths",
        mode="before",
    )
    @classmethod
    def split_lists(cls, value: Any) -> Any:
        return _split_csv(value)


class AppConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    threat_intel: ThreatIntelConfig = Field(default_factory=ThreatIntelConfig)
    tools: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


SECTIONS = ("threat_intel", "engine", "logging")


class ConfigManager:
    """Loads config.yaml, overlays PERSISTGUARD_* environment variables, validates."""

    def __init__(self, config_path: Optional[str] = "config.yaml", environ: Optional[Dict[str, str]] = None):
        self.config_path = Path(config_path) if config_path else None
        self.environ = os.environ if environ is None else environ
        self.config: Optional[AppConfig] = None
        self.load_config()

    def load_config(self) -> AppConfig:
        """Load configuration from file; a missing file means defaults."""
        config_data: Dict[str, Any] = {}
        if self.config_path is not None and self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    config_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e
            if not isinstance(config_data, dict):
                raise ConfigError(f"{self.config_path} must contain a mapping at the top level")

        # Merge with environment variables
        config_data = self._merge_env_vars(config_data)

        try:
            self.config = AppConfig(**config_data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
        return self.config

    def _merge_env_vars(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge environment variables with configuration.

        PERSISTGUARD_ENGINE_COMMAND_TIMEOUT=12 sets engine.command_timeout.
        """
        for key, value in self.environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            config_key = key[len(ENV_PREFIX):].lower()
            section = next((s for s in SECTIONS if config_key.startswith(s + "_")), None)
            if section is None:
                continue
            nested_key = config_key[len(section) + 1:]
            section_data = config_data.get(section) or {}
            if not isinstance(section_data, dict):
                raise ConfigError(f"Section '{section}' must be a mapping")
            section_data[nested_key] = value
            config_data[section] = section_data
        return config_data

    def get_config(self) -> AppConfig:
        if self.config is None:
            self.load_config()
        return self.config

    def get_section(self, section: str) -> Dict[str, Any]:
        config = self.get_config()
        if section not in AppConfig.model_fields:
            raise ConfigError(f"Unknown configuration section: {section}")
        value = getattr(config, section)
        return value.model_dump() if isinstance(value, BaseModel) else dict(value)


def configure_logging(level: str = "INFO", log_dir: Optional[str] = None) -> None:
    """Setup logging: stderr always, plus persistguard.log when log_dir is given."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path / 'persistguard.log'))
    logging.basicConfig(level=log_level, format=LOG_FORMAT, handlers=handlers, force=True)
