"""Configuration system for oidc-session using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.oidc_session] section (project-level)
3. ./oidc_session.toml (project-level, explicit)
4. ~/.config/oidc_session/config.toml (user-level, overrides project)
5. OIDC_SESSION_CONFIG_FILE (explicit file)
6. Environment variables (highest priority)

Environment variables use the OIDC_SESSION__ prefix with nested
delimiter __. Example: OIDC_SESSION__CLIENT_ID, OIDC_SESSION__STORE__BACKEND
"""

from __future__ import annotations

import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


logger = logging.getLogger("oidc_session.config")

DEFAULT_SCOPES = "openid profile offline_access"


def _user_config_path() -> Path:
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "~")).expanduser() / "oidc_session" / "config.toml"
    return Path("~/.config/oidc_session/config.toml").expanduser()


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("oidc_session.toml")
    if project_toml.exists():
        files.append(project_toml)

    user_config = _user_config_path()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("OIDC_SESSION_CONFIG_FILE")
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
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("oidc_session", {})

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


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {"client_secret"}

_REDACTED = "********"


def build_redirect_uri(app_identifier: str, provider_tag: str) -> str:
    """Build the ``<app-id>:/oauth2redirect/<provider-tag>`` redirect URI."""
    return f"{app_identifier}:/oauth2redirect/{provider_tag}"


class _TomlLayersSource(PydanticBaseSettingsSource):
    """Settings source that yields the merged TOML configuration files."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        data = _load_toml_config()
        return {k: v for k, v in data.items() if k in self.settings_cls.model_fields}


class StoreSettings(BaseSettings):
    """Session persistence settings.

    Environment prefix: OIDC_SESSION__STORE__
    Example: OIDC_SESSION__STORE__BACKEND=keyring
    """

    model_config = SettingsConfigDict(
        env_prefix="OIDC_SESSION__STORE__",
        extra="ignore",
    )

    backend: Literal["memory", "file", "keyring"] = Field(
        default="file",
        description="Where session state is persisted: memory, file, or keyring",
    )
    directory: str = Field(
        default="",
        description="Directory for the file backend (default: per-user data dir)",
    )
    service_name: str = Field(
        default="oidc-session",
        description="Service name for the keyring backend",
    )
    key: str = Field(
        default="oidc_session.auth_state",
        description="Key the session state is stored under",
    )


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: OIDC_SESSION__LOG__
    Example: OIDC_SESSION__LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="OIDC_SESSION__LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class OIDCSettings(BaseSettings):
    """OIDC client settings.

    Environment prefix: OIDC_SESSION__
    Example: OIDC_SESSION__ISSUER_URL=https://example.plusauth.com

    TOML section: [tool.oidc_session] or the top level of oidc_session.toml
    """

    model_config = SettingsConfigDict(
        env_prefix="OIDC_SESSION__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    issuer_url: str = Field(default="", description="OIDC issuer URL used for discovery")
    client_id: str = Field(default="", description="OAuth2 client ID registered with the provider")
    client_secret: str = Field(
        default="",
        description="OAuth2 client secret (empty for public clients with PKCE)",
    )
    app_identifier: str = Field(
        default="com.example.oidcsession",
        description="Application identifier, used as the redirect URI scheme",
    )
    provider_tag: str = Field(
        default="oidc-provider",
        description="Provider tag in the redirect URI path",
    )
    redirect_uri: str = Field(
        default="",
        description="Explicit redirect URI (overrides <app_identifier>:/oauth2redirect/<tag>)",
    )
    post_logout_redirect_uri: str = Field(
        default="",
        description="Post-logout redirect URI (defaults to the redirect URI)",
    )
    scopes: str = Field(default=DEFAULT_SCOPES, description="Space-separated scopes to request")

    refresh_margin_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Tokens expiring within this many seconds are refreshed first",
    )
    http_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout applied to every HTTP request",
    )
    auth_timeout_seconds: float = Field(
        default=300.0,
        ge=10.0,
        description="Maximum seconds to wait for the browser redirect",
    )
    verify_id_token_claims: bool = Field(
        default=True,
        description="Check issuer, audience, expiry and nonce of ID tokens",
    )
    verify_id_token_signature: bool = Field(
        default=False,
        description="Also verify ID token signatures against the provider JWKS",
    )

    store: StoreSettings = Field(default_factory=StoreSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Keyword arguments > environment > TOML files > defaults
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            _TomlLayersSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("issuer_url")
    @classmethod
    def _strip_issuer(cls, v: str) -> str:
        return v.strip()

    @property
    def scope_list(self) -> list[str]:
        """The requested scopes as a list."""
        return [s for s in self.scopes.split() if s]

    @property
    def effective_redirect_uri(self) -> str:
        """The redirect URI sent to the provider and watched by the user agent."""
        return self.redirect_uri or build_redirect_uri(self.app_identifier, self.provider_tag)

    @property
    def effective_post_logout_redirect_uri(self) -> str:
        """The redirect URI used after logout."""
        return self.post_logout_redirect_uri or self.effective_redirect_uri

    def require_client(self) -> None:
        """Raise ValueError unless issuer and client ID are configured."""
        missing = [name for name in ("issuer_url", "client_id") if not getattr(self, name)]
        if missing:
            env = ", ".join(f"OIDC_SESSION__{name.upper()}" for name in missing)
            msg = f"Missing required settings: {', '.join(missing)} (set {env})"
            raise ValueError(msg)

    def to_toml(self) -> str:
        """Export settings as a TOML string (secrets redacted)."""
        lines = ["# oidc-session configuration", ""]
        data = self.model_dump(exclude=_SENSITIVE_FIELDS | {"store", "log"})
        lines.extend(_toml_line(name, value) for name, value in data.items())
        lines.extend(f'{name} = "{_REDACTED}"' for name in sorted(_SENSITIVE_FIELDS))
        for section in ("store", "log"):
            lines.append("")
            lines.append(f"[{section}]")
            lines.extend(
                _toml_line(name, value) for name, value in getattr(self, section).model_dump().items()
            )
        return "\n".join(lines) + "\n"

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["oidc-session Configuration", "=" * 60, ""]
        data = self.model_dump(exclude=_SENSITIVE_FIELDS | {"store", "log"})
        for name, value in data.items():
            lines.append(f"  {name:26} = {value}")
        lines.extend(f"  {name:26} = {_REDACTED}" for name in sorted(_SENSITIVE_FIELDS))
        lines.append(f"  {'redirect (effective)':26} = {self.effective_redirect_uri}")
        for section in ("store", "log"):
            lines.append(f"\n{section.title()}")
            lines.append("-" * 40)
            for name, value in getattr(self, section).model_dump().items():
                lines.append(f"  {name:26} = {value}")
        return "\n".join(lines)


def _toml_line(name: str, value: Any) -> str:
    if isinstance(value, bool):
        return f"{name} = {'true' if value else 'false'}"
    if isinstance(value, (int, float)):
        return f"{name} = {value}"
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'{name} = "{escaped}"'


@lru_cache(maxsize=1)
def get_settings() -> OIDCSettings:
    """Get the settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return OIDCSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()
