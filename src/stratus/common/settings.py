"""Application configuration models shared by services."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def env_field(default, env_name: str, **constraints):
    return Field(default, validation_alias=env_name, **constraints)


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class ControlPlaneSettings(BaseSettings):
    """Runtime settings for the webhook and callback API service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    github_app_id: int = env_field(..., "STRATUS_GITHUB_APP_ID")
    github_app_installation_id: int = env_field(..., "STRATUS_GITHUB_APP_INSTALLATION_ID")
    github_app_private_key_file: Path = env_field(..., "STRATUS_GITHUB_APP_PRIVATE_KEY_FILE")
    github_api_url: HttpUrl = env_field("https://api.github.com", "STRATUS_GITHUB_API_URL")
    webhook_secret: SecretStr = env_field(..., "STRATUS_WEBHOOK_SECRET")
    callback_secret: SecretStr = env_field(..., "STRATUS_CALLBACK_SECRET")
    callback_url: HttpUrl = env_field(..., "STRATUS_CALLBACK_URL")
    callback_secret_parameter: str = env_field("/github-runners/callback-secret", "STRATUS_CALLBACK_SECRET_PARAM")
    token_parameter_prefix: str = env_field("/github-runners/tokens", "STRATUS_TOKEN_PARAM_PREFIX")
    aws_region: Optional[str] = env_field(None, "STRATUS_AWS_REGION")
    do_token: SecretStr = env_field(..., "STRATUS_DO_TOKEN")
    do_api_url: HttpUrl = env_field("https://api.digitalocean.com", "STRATUS_DO_API_URL")
    do_region: str = env_field("nyc3", "STRATUS_DO_REGION")
    do_size: str = env_field("s-4vcpu-8gb", "STRATUS_DO_SIZE")
    do_image: str = env_field("ubuntu-24-04-x64", "STRATUS_DO_IMAGE")
    do_ssh_fingerprints: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="STRATUS_DO_SSH_FINGERPRINTS")
    bootstrap_template: Optional[Path] = env_field(None, "STRATUS_BOOTSTRAP_TEMPLATE")
    runner_version: str = env_field("2.331.0", "STRATUS_RUNNER_VERSION")
    required_label: str = env_field("self-hosted", "STRATUS_REQUIRED_LABEL")
    max_concurrent_provisions: int = env_field(10, "STRATUS_MAX_CONCURRENT", gt=0)
    repo_rate_limit: int = env_field(20, "STRATUS_REPO_RATE_LIMIT", gt=0)
    repo_rate_window_seconds: float = env_field(60.0, "STRATUS_REPO_RATE_WINDOW", gt=0)
    max_webhook_body_bytes: int = env_field(1024 * 1024, "STRATUS_MAX_WEBHOOK_BODY")
    provision_timeout_seconds: float = env_field(300.0, "STRATUS_PROVISION_TIMEOUT")
    callback_timeout_seconds: float = env_field(30.0, "STRATUS_CALLBACK_TIMEOUT")
    trusted_proxy_cidrs: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="STRATUS_TRUSTED_PROXY_CIDRS")
    reaper_interval_seconds: int = env_field(0, "STRATUS_REAPER_INTERVAL")
    reaper_max_age_minutes: int = env_field(60, "STRATUS_REAPER_MAX_AGE_MINUTES")
    listen_host: str = env_field("0.0.0.0", "STRATUS_LISTEN_HOST")
    listen_port: int = env_field(8080, "STRATUS_LISTEN_PORT")
    metrics_token: Optional[SecretStr] = env_field(None, "STRATUS_METRICS_TOKEN")
    log_level: str = env_field("INFO", "STRATUS_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "STRATUS_OTEL_SAMPLER_RATIO")

    @field_validator("do_ssh_fingerprints", mode="before")
    @classmethod
    def _split_ssh_fingerprints(cls, value):
        return _split_csv(value)

    @field_validator("trusted_proxy_cidrs", mode="before")
    @classmethod
    def _split_proxy_cidrs(cls, value):
        return _split_csv(value)


class ReaperSettings(BaseSettings):
    """Configuration for the stale droplet reaper job."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    do_token: SecretStr = env_field(..., "STRATUS_DO_TOKEN")
    do_api_url: HttpUrl = env_field("https://api.digitalocean.com", "STRATUS_DO_API_URL")
    max_age_minutes: int = env_field(60, "STRATUS_REAPER_MAX_AGE_MINUTES")
    tag: str = env_field("github-runner", "STRATUS_REAPER_TAG")
    timeout_seconds: float = env_field(120.0, "STRATUS_REAPER_TIMEOUT")
    log_level: str = env_field("INFO", "STRATUS_LOG_LEVEL")
