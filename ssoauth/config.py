"""Configuration system for ssoauth using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.ssoauth] section (project-level)
3. ./ssoauth.toml (project-level, explicit)
4. ~/.config/ssoauth/config.toml (user-level, overrides project)
5. Environment variables (highest priority)

Environment variables use SSOAUTH_ prefix with nested delimiter __.
Example: SSOAUTH_SSO__START_URL, SSOAUTH_STORAGE__BACKEND
"""

from __future__ import annotations

import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


def _user_config_dir() -> Path:
    """Per-user configuration directory."""
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "~")).expanduser() / "ssoauth"
    return Path("~/.config/ssoauth").expanduser()


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    explicit = Path("ssoauth.toml")
    if explicit.exists():
        files.append(explicit)

    user_config = _user_config_dir() / "config.toml"
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("SSOAUTH_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("ssoauth", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class SsoSettings(BaseSettings):
    """Identity Center portal and flow settings.

    Environment prefix: SSOAUTH_SSO__
    Example: SSOAUTH_SSO__START_URL=https://d-1234567890.awsapps.com/start

    TOML section: [tool.ssoauth.sso]
    """

    model_config = SettingsConfigDict(
        env_prefix="SSOAUTH_SSO__",
        extra="ignore",
    )

    start_url: str = Field(
        default="",
        description="Identity portal start URL",
    )
    region: str = Field(
        default="us-east-1",
        description="Region hosting the identity portal",
    )
    client_name: str = Field(
        default="ssoauth desktop",
        description="Name sent when registering the public OIDC client",
    )
    scopes: str = Field(
        default="sso:account:access",
        description="Space-separated scopes requested for the client",
    )

    auth_timeout_seconds: float = Field(
        default=300.0,
        ge=1.0,
        description="Maximum seconds to wait for the browser callback",
    )
    default_poll_interval_seconds: int = Field(
        default=5,
        ge=1,
        description="Device-flow poll interval when the provider omits one",
    )
    default_device_expiry_seconds: int = Field(
        default=600,
        ge=30,
        description="Device-code lifetime when the provider omits one",
    )
    refresh_margin_seconds: int = Field(
        default=60,
        ge=0,
        description="Tokens expiring within this margin count as expired",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for each provider HTTP call",
    )

    authorize_endpoint_strategy: Literal["portal-suffix", "regional-oidc"] = Field(
        default="portal-suffix",
        description="How the browser flow derives the authorization endpoint",
    )
    oidc_endpoint: str = Field(
        default="",
        description="Override for the OIDC service base URL",
    )
    portal_endpoint: str = Field(
        default="",
        description="Override for the portal service base URL",
    )

    @property
    def scope_list(self) -> list[str]:
        """Scopes as a list."""
        return [s for s in self.scopes.split() if s]

    @field_validator("start_url")
    @classmethod
    def _strip_start_url(cls, v: str) -> str:
        """Normalise surrounding whitespace."""
        return v.strip()


class StorageSettings(BaseSettings):
    """Settings-record persistence.

    Environment prefix: SSOAUTH_STORAGE__
    Example: SSOAUTH_STORAGE__BACKEND=memory
    """

    model_config = SettingsConfigDict(
        env_prefix="SSOAUTH_STORAGE__",
        extra="ignore",
    )

    backend: Literal["memory", "file"] = Field(
        default="file",
        description="Settings store backend: memory or file",
    )
    path: Path = Field(
        default_factory=lambda: _user_config_dir() / "sso-session.json",
        description="Location of the settings record for the file backend",
    )
    keyring_service: str = Field(
        default="ssoauth",
        description="Keyring service name holding the encryption key",
    )


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: SSOAUTH_LOG__
    Example: SSOAUTH_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="SSOAUTH_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: SSOAUTH__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.ssoauth] section
    3. ./ssoauth.toml (project-level)
    4. ~/.config/ssoauth/config.toml (user-level, overrides project)
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="SSOAUTH__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    sso: SsoSettings = Field(default_factory=SsoSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        # Explicit keyword data wins over TOML files
        merged = _deep_merge(_load_toml_config(), data)
        super().__init__(**merged)

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = ["# ssoauth configuration", "# Generated by: ssoauth config --toml", ""]

        for section_name, section_data in self.model_dump(mode="json").items():
            lines.append(f"[{section_name}]")
            for field_name, field_value in section_data.items():
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                elif isinstance(field_value, str):
                    value_str = f'"{field_value}"'
                else:
                    value_str = str(field_value)
                lines.append(f"{field_name} = {value_str}")
            lines.append("")

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["ssoauth Configuration", "=" * 60]

        for section_name, section_data in self.model_dump(mode="json").items():
            lines.append(f"\n[{section_name}]")
            lines.append("-" * 40)
            for field_name, field_value in section_data.items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:30} = {value_str}")

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return Settings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()
