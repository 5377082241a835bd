"""
Configuration management using Pydantic models loaded from YAML.
"""

from pathlib import Path
from typing import List, Optional

import pendulum
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .domain.models import LOCAL_SOURCE_ID, FeedSource


class SyncConfig(BaseModel):
    """Settings for the periodic feed synchronisation."""
    interval_seconds: int = 900
    timeout_seconds: float = 15.0
    max_apply_attempts: int = 3
    skip_past_events: bool = False
    user_agent: str = "staysync/1.0"

    @field_validator("interval_seconds", "max_apply_attempts")
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"Value must be greater than zero, got {value}")
        return value

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError(f"timeout_seconds must be greater than zero, got {value}")
        return value


class FeedConfig(BaseModel):
    """An external channel calendar for a resource."""
    source_id: str
    url: str
    interval_seconds: Optional[int] = None

    @field_validator("source_id")
    @classmethod
    def validate_source_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("source_id must not be empty")
        if value == LOCAL_SOURCE_ID:
            raise ValueError(f"source_id '{LOCAL_SOURCE_ID}' is reserved for staff bookings")
        return value

    @field_validator("interval_seconds")
    @classmethod
    def validate_interval(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError(f"interval_seconds must be greater than zero, got {value}")
        return value


class ResourceConfig(BaseModel):
    """A property or bookable unit and its feeds."""
    id: str
    name: str = ""
    feeds: List[FeedConfig] = Field(default_factory=list)

    def display_name(self) -> str:
        return self.name or self.id


class AppConfig(BaseModel):
    """Application configuration."""
    timezone: str = "Europe/Paris"
    database_url: str = "sqlite:///staysync.db"
    auto_revert_conflicts: bool = False
    sync: SyncConfig = Field(default_factory=SyncConfig)
    resources: List[ResourceConfig] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Ensure the timezone is a known IANA identifier."""
        try:
            pendulum.timezone(value)
        except Exception as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @model_validator(mode="after")
    def validate_identifiers(self) -> "AppConfig":
        """
        Ensure resource ids are unique and source ids are unique overall.

        Synced bookings are keyed by ``(source_id, external_uid)``, so a
        source id has to name exactly one feed.
        """
        seen_resources: set[str] = set()
        seen_sources: set[str] = set()
        for resource in self.resources:
            if resource.id in seen_resources:
                raise ValueError(f"Duplicate resource id detected: {resource.id}")
            seen_resources.add(resource.id)
            for feed in resource.feeds:
                if feed.source_id in seen_sources:
                    raise ValueError(f"Duplicate feed source id detected: {feed.source_id}")
                seen_sources.add(feed.source_id)
        return self

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a config.yaml file. See config.example.yaml for reference."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        return cls(**data)

    def find_resource(self, resource_id: str) -> ResourceConfig | None:
        """Find a resource by its id."""
        for resource in self.resources:
            if resource.id == resource_id:
                return resource
        return None

    def feeds(self, resource_id: Optional[str] = None) -> List[FeedSource]:
        """
        Flatten the configured feeds, optionally for a single resource.

        Raises:
            ValueError: If ``resource_id`` is not configured
        """
        if resource_id is not None and self.find_resource(resource_id) is None:
            raise ValueError(f"Unknown resource: '{resource_id}'")

        return [
            FeedSource(
                resource_id=resource.id,
                source_id=feed.source_id,
                url=feed.url,
                interval_seconds=feed.interval_seconds,
            )
            for resource in self.resources
            if resource_id is None or resource.id == resource_id
            for feed in resource.feeds
        ]


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for config.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "config.yaml"

    if not config_path.exists():
        # Try in the project root (parent of the package)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "config.yaml"

    return config_path
