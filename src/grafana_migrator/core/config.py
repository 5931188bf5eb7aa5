"""
Configuration management for the Grafana migrator.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class InstanceConfig(BaseModel):
    """Connection settings for one Grafana instance."""

    host: str = Field(..., description="Base URL of the instance, e.g. https://grafana.example.com")
    api_key: str = Field(..., description="Service account token sent as a bearer credential")

    @property
    def headers(self) -> dict:
        """Get headers for API calls against this instance."""
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }


class Config(BaseModel):
    """Configuration class for the migrator."""

    # Source / destination instances
    src: InstanceConfig = Field(..., description="Instance content is read from")
    dst: InstanceConfig = Field(..., description="Instance content is written to")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Console log format (json or text)")

    # Concurrency Configuration
    max_workers: int = Field(default=4, ge=1, description="Worker pool size per migration phase")
    run_timeout_seconds: Optional[float] = Field(
        default=None,
        description="Stop dispatching new work after this many seconds"
    )

    # HTTP Configuration
    api_timeout_seconds: float = Field(default=5.0, description="Per request timeout")
    api_rate_limit_per_second: int = Field(
        default=10,
        description="API rate limit per second"
    )
    api_retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum attempts for requests failing at the transport level"
    )
    api_retry_backoff_factor: float = Field(
        default=1.0,
        description="Backoff multiplier for retries"
    )

    # Storage Configuration
    snapshots_storage_path: str = Field(
        default="./snapshot",
        description="Directory exported snapshots are written to and imported from"
    )
    outputs_storage_path: str = Field(
        default="./outputs",
        description="Path to store migration summaries"
    )
    logs_storage_path: str = Field(
        default="./logs",
        description="Path to store log files"
    )

    # Datasource secrets keyed by datasource uid or name
    datasource_secrets: Dict[str, Dict[str, str]] = Field(
        default_factory=dict,
        description="secureJsonData to send for datasources, never read from the source"
    )

    def __init__(self, **kwargs):
        # Load environment variables
        load_dotenv()

        config_file = kwargs.pop('config_file', None) or os.getenv('CONFIG_FILE')
        file_config = load_config_file(config_file) if config_file else {}

        env_config = {
            'log_level': os.getenv('LOG_LEVEL'),
            'log_format': os.getenv('LOG_FORMAT'),
            'max_workers': os.getenv('MAX_WORKERS'),
            'run_timeout_seconds': os.getenv('RUN_TIMEOUT_SECONDS'),
            'api_timeout_seconds': os.getenv('API_TIMEOUT_SECONDS'),
            'api_rate_limit_per_second': os.getenv('API_RATE_LIMIT_PER_SECOND'),
            'api_retry_max_attempts': os.getenv('API_RETRY_MAX_ATTEMPTS'),
            'api_retry_backoff_factor': os.getenv('API_RETRY_BACKOFF_FACTOR'),
            'snapshots_storage_path': os.getenv('SNAPSHOTS_STORAGE_PATH'),
            'outputs_storage_path': os.getenv('OUTPUTS_STORAGE_PATH'),
            'logs_storage_path': os.getenv('LOGS_STORAGE_PATH'),
        }

        # Remove None values
        env_config = {k: v for k, v in env_config.items() if v is not None}

        merged = dict(file_config)
        merged.update(env_config)

        for team, prefix in (('src', 'GRAFANA_SRC'), ('dst', 'GRAFANA_DST')):
            instance = dict(merged.get(team) or {})
            if os.getenv(f'{prefix}_HOST'):
                instance['host'] = os.getenv(f'{prefix}_HOST')
            if os.getenv(f'{prefix}_API_KEY'):
                instance['api_key'] = os.getenv(f'{prefix}_API_KEY')
            if instance:
                merged[team] = instance

        # Merge with provided kwargs
        merged.update(kwargs)

        super().__init__(**merged)

    def validate_config(self) -> bool:
        """Validate that required configuration is present."""
        if not self.src.host or not self.src.api_key:
            raise ValueError("GRAFANA_SRC_HOST and GRAFANA_SRC_API_KEY are required")
        if not self.dst.host or not self.dst.api_key:
            raise ValueError("GRAFANA_DST_HOST and GRAFANA_DST_API_KEY are required")
        return True

    def secrets_for(self, uid: Optional[str], name: Optional[str]) -> Optional[Dict[str, str]]:
        """Return operator supplied secureJsonData for a datasource, looked up by uid then name."""
        if uid and uid in self.datasource_secrets:
            return dict(self.datasource_secrets[uid])
        if name and name in self.datasource_secrets:
            return dict(self.datasource_secrets[name])
        return None


def load_config_file(path: str) -> Dict[str, Any]:
    """
    Load a YAML config file.

    The file holds ``src`` and ``dst`` blocks (``host`` and ``api_key``), an
    optional ``settings`` block with any other Config field, and an optional
    ``datasource_secrets`` block.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")

    result: Dict[str, Any] = dict(data.pop('settings', None) or {})
    result.update(data)
    return result
