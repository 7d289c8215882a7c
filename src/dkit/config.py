"""Configuration management for dkit."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import os

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from .errors import NotFoundError
from .project import DEFAULT_DATA_DIR_NAME, find_data_dir

CONFIG_FILE_NAME = "config.yaml"


def config_file_path() -> Path:
    """Locate the YAML settings file for the current project.

    ``DKIT_CONFIG_FILE`` wins; otherwise ``config.yaml`` inside the nearest data
    directory. The returned path may not exist.
    """

    explicit = os.environ.get("DKIT_CONFIG_FILE")
    if explicit:
        return Path(explicit).expanduser()
    dir_name = os.environ.get("DKIT_DATA_DIR_NAME") or DEFAULT_DATA_DIR_NAME
    try:
        return find_data_dir(dir_name=dir_name) / CONFIG_FILE_NAME
    except NotFoundError:
        return Path(dir_name) / CONFIG_FILE_NAME


class DkitSettings(BaseSettings):
    """Runtime configuration sourced from env vars, an optional .env file and the project YAML file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    data_dir_name: str = Field(default=DEFAULT_DATA_DIR_NAME, validation_alias="DKIT_DATA_DIR_NAME")
    project_marker: str = Field(default=".git", validation_alias="DKIT_PROJECT_MARKER")
    log_level: str = Field(default="WARNING", validation_alias="DKIT_LOG_LEVEL")
    default_log_lines: int = Field(default=100, validation_alias="DKIT_DEFAULT_LOG_LINES")
    add_local_bin: bool = Field(default=True, validation_alias="DKIT_ADD_LOCAL_BIN")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_settings = YamlConfigSettingsSource(settings_cls, yaml_file=config_file_path())
        return (init_settings, env_settings, dotenv_settings, yaml_settings, file_secret_settings)

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "DKIT_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("data_dir_name", "project_marker")
    @classmethod
    def _validate_marker(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized or "/" in normalized or "\\" in normalized:
            raise ValueError("Marker names must be a single non-empty path component")
        return normalized

    @field_validator("default_log_lines")
    @classmethod
    def _validate_default_log_lines(cls, value: int) -> int:
        if value < 1:
            raise ValueError("DKIT_DEFAULT_LOG_LINES must be >= 1")
        return value


@lru_cache(maxsize=1)
def get_settings() -> DkitSettings:
    """Return cached settings instance."""

    return DkitSettings()


__all__ = ["CONFIG_FILE_NAME", "DkitSettings", "config_file_path", "get_settings"]
