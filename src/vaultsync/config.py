"""Configuration management for vaultsync.

Loads configuration from environment variables and provides defaults.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env file if present
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Application configuration."""

    # Notion
    notion_api_key: Optional[str]
    notion_database_id: Optional[str]

    # Vault
    vault_path: Path
    destination_folder: str
    template_path: Optional[str]

    # File naming
    file_naming_pattern: str
    include_date_in_filename: bool
    date_format: str  # strftime format
    date_position: str  # "prefix" or "suffix"
    date_separator: str
    date_source: str  # "created" or "current"

    # Sync
    bidirectional_sync: bool
    import_interval: int  # minutes
    debounce_seconds: float

    # Rate limiting
    requests_per_second: float
    burst_size: int
    adaptive_backoff: bool

    # Logging
    log_level: str
    log_file: Optional[str]

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        vault_path = Path(os.environ.get("VAULTSYNC_VAULT_PATH", ".")).expanduser()

        return cls(
            notion_api_key=os.environ.get("NOTION_API_KEY"),
            notion_database_id=os.environ.get("NOTION_DATABASE_ID"),
            vault_path=vault_path,
            destination_folder=os.environ.get(
                "VAULTSYNC_DESTINATION_FOLDER", "Notion Imports"
            ),
            template_path=os.environ.get("VAULTSYNC_TEMPLATE_PATH") or None,
            file_naming_pattern=os.environ.get("VAULTSYNC_FILE_PATTERN", "{{title}}"),
            include_date_in_filename=_env_bool("VAULTSYNC_INCLUDE_DATE", True),
            date_format=os.environ.get("VAULTSYNC_DATE_FORMAT", "%Y-%m-%d"),
            date_position=os.environ.get("VAULTSYNC_DATE_POSITION", "prefix"),
            date_separator=os.environ.get("VAULTSYNC_DATE_SEPARATOR", "--"),
            date_source=os.environ.get("VAULTSYNC_DATE_SOURCE", "created"),
            bidirectional_sync=_env_bool("VAULTSYNC_BIDIRECTIONAL", False),
            import_interval=int(os.environ.get("VAULTSYNC_IMPORT_INTERVAL", "60")),
            debounce_seconds=float(os.environ.get("VAULTSYNC_DEBOUNCE_SECONDS", "2.0")),
            requests_per_second=float(
                os.environ.get("VAULTSYNC_REQUESTS_PER_SECOND", "2.5")
            ),
            burst_size=int(os.environ.get("VAULTSYNC_BURST_SIZE", "5")),
            adaptive_backoff=_env_bool("VAULTSYNC_ADAPTIVE_BACKOFF", True),
            log_level=os.environ.get("VAULTSYNC_LOG_LEVEL", "INFO"),
            log_file=os.environ.get("VAULTSYNC_LOG_FILE") or None,
        )

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if not self.vault_path.exists():
            errors.append(f"Vault directory does not exist: {self.vault_path}")

        if self.date_position not in ("prefix", "suffix"):
            errors.append(f"Invalid date position: {self.date_position}")

        if self.date_source not in ("created", "current"):
            errors.append(f"Invalid date source: {self.date_source}")

        if self.requests_per_second <= 0:
            errors.append("Requests per second must be positive")

        if self.burst_size < 1:
            errors.append("Burst size must be at least 1")

        return errors

    def has_notion_config(self) -> bool:
        """Check if Notion configuration is present."""
        return bool(self.notion_api_key and self.notion_database_id)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global config instance. Used for testing."""
    global _config
    _config = None
