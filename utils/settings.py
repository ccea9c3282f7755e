"""Process configuration loaded from environment variables.

Every value the server needs is read once at startup and validated against a
fixed schema. Storage settings are only required when `S3_UPLOAD_ENABLED` is
`"true"`. Any failure raises `ConfigError` before the HTTP server binds.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from utils.errors import ConfigError

BASE_DIR = Path(__file__).resolve().parent.parent

_S3_FIELDS = (
    "S3_REGION",
    "S3_ACCESS_KEY_ID",
    "S3_SECRET_ACCESS_KEY",
    "S3_ENDPOINT",
    "S3_BUCKET_NAME",
    "S3_PUBLIC_ENDPOINT",
    "S3_KEY_PREFIX",
)


def _require_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"{value!r} is not a valid http(s) URL")
    return value.rstrip("/")


class S3Settings(BaseModel):
    """Durable storage settings, only present when uploads are enabled."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    region: str = Field(alias="S3_REGION", min_length=1)
    access_key_id: str = Field(alias="S3_ACCESS_KEY_ID", min_length=1)
    secret_access_key: str = Field(alias="S3_SECRET_ACCESS_KEY", min_length=1)
    endpoint: str = Field(alias="S3_ENDPOINT")
    bucket_name: str = Field(alias="S3_BUCKET_NAME", min_length=1)
    public_endpoint: str = Field(alias="S3_PUBLIC_ENDPOINT")
    key_prefix: str = Field(default="selfie/", alias="S3_KEY_PREFIX")

    @field_validator("endpoint", "public_endpoint")
    @classmethod
    def _check_url(cls, value: str) -> str:
        return _require_url(value)


class Settings(BaseModel):
    """Typed settings for the selfie server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    comfyui_url: str = Field(alias="COMFYUI_URL")
    workflow_file_path: str = Field(default="workflow.json", alias="WORKFLOW_FILE_PATH")
    positive_prompt_node_id: str = Field(alias="POSITIVE_PROMPT_NODE_ID", min_length=1)
    positive_prompt_input_name: str = Field(alias="POSITIVE_PROMPT_INPUT_NAME", min_length=1)
    output_node_id: str = Field(alias="OUTPUT_NODE_ID", min_length=1)
    seed_node_id: str = Field(alias="SEED_NODE_ID", min_length=1)
    seed_input_name: str = Field(alias="SEED_INPUT_NAME", min_length=1)
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT", gt=0, lt=65536)
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    s3_upload_enabled: bool = Field(default=False, alias="S3_UPLOAD_ENABLED")
    s3: Optional[S3Settings] = None

    @field_validator("comfyui_url")
    @classmethod
    def _check_comfyui_url(cls, value: str) -> str:
        return _require_url(value)

    @field_validator("s3_upload_enabled", mode="before")
    @classmethod
    def _parse_switch(cls, value: object) -> object:
        # Only the literal strings "true" and "false" are accepted.
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized not in ("true", "false"):
                raise ValueError("S3_UPLOAD_ENABLED must be 'true' or 'false'")
            return normalized == "true"
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported log level {value!r}")
        return level

    @model_validator(mode="after")
    def _check_storage(self) -> "Settings":
        if self.s3_upload_enabled and self.s3 is None:
            raise ValueError("S3 settings are required when S3_UPLOAD_ENABLED is 'true'")
        return self

    @property
    def workflow_path(self) -> Path:
        """Absolute template path; relative values resolve against the project directory."""
        path = Path(self.workflow_file_path).expanduser()
        if not path.is_absolute():
            path = BASE_DIR / path
        return path


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Validate the environment and return a `Settings` instance.

    Args:
        environ: Mapping to read from; defaults to `os.environ`.

    Raises:
        ConfigError: If any variable is missing or malformed.
    """
    env = dict(os.environ if environ is None else environ)
    aliases = {field.alias for field in Settings.model_fields.values() if field.alias}
    data = {key: value for key, value in env.items() if key in aliases}
    enabled = (env.get("S3_UPLOAD_ENABLED") or "false").strip().lower() == "true"
    if enabled:
        data["s3"] = {key: env[key] for key in _S3_FIELDS if key in env}
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from exc
