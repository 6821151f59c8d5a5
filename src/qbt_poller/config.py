"""
Configuration management for the qBittorrent poller.

This module turns the raw module configuration sent by the consumer into a
validated, normalized engine configuration, and loads process settings from
environment variables using Pydantic Settings.
"""

import os
import stat
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

logger = structlog.get_logger(__name__)

DEFAULT_UPDATE_INTERVAL_MS = 5000
DEFAULT_POLL_TIMEOUT_MS = 2000
DEFAULT_MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_MAX_BACKOFF_INTERVAL_MS = 40000
MIN_UPDATE_INTERVAL_MS = 1000
MIN_POLL_TIMEOUT_MS = 500


class TlsConfig(BaseModel):
    """TLS settings for HTTPS endpoints."""

    reject_unauthorized: bool = Field(
        default=True, description="Validate the server certificate"
    )
    ca: str | list[str] | None = Field(
        default=None, description="CA bundle path or list of paths"
    )
    cert: str | None = Field(default=None, description="Client certificate path")
    key: str | None = Field(default=None, description="Client private key path")
    passphrase: str | None = Field(default=None, description="Private key passphrase")
    min_version: str | None = Field(
        default="TLSv1.2", description="Minimum TLS protocol version"
    )
    max_version: str | None = Field(
        default=None, description="Maximum TLS protocol version"
    )

    @property
    def ca_paths(self) -> list[str]:
        """Get CA paths as a list."""
        if not self.ca:
            return []
        return [self.ca] if isinstance(self.ca, str) else list(self.ca)


class ConnectionConfig(BaseModel):
    """Remote service connection settings."""

    host: str = Field(default="", description="Base URL of the Web UI")
    username: str = Field(default="", description="Web UI username")
    password: str = Field(default="", description="Web UI password")
    tls: TlsConfig = Field(default_factory=TlsConfig)

    @field_validator("host")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Drop trailing slashes so endpoint paths can be appended."""
        return v.rstrip("/")

    @property
    def is_https(self) -> bool:
        """Check if the host uses TLS."""
        return self.host.lower().startswith("https://")


class PollingConfig(BaseModel):
    """Polling configuration settings."""

    update_interval: int = Field(
        default=DEFAULT_UPDATE_INTERVAL_MS, description="Base poll interval in ms"
    )
    poll_timeout: int = Field(
        default=DEFAULT_POLL_TIMEOUT_MS, description="Per-request timeout in ms"
    )
    max_consecutive_failures: int = Field(
        default=DEFAULT_MAX_CONSECUTIVE_FAILURES,
        description="Failures before retrying is considered over",
    )
    pause_on_repeated_failures: bool = Field(
        default=False, description="Pause polling once max failures is reached"
    )
    max_backoff_interval: int = Field(
        default=DEFAULT_MAX_BACKOFF_INTERVAL_MS,
        description="Upper bound for the backed-off interval in ms",
    )


class DisplayConfig(BaseModel):
    """Display settings, passed through to the consumer unchanged."""

    model_config = ConfigDict(extra="allow")

    max_items: int = Field(default=5, description="Maximum rows to show")
    view_filter: str = Field(default="all", description="Row filter")
    compact: bool = Field(default=False, description="Compact layout")
    scale: float = Field(default=0.6, description="Display scale")


class NormalizedConfig(BaseModel):
    """Engine configuration after legacy keys and defaults are merged."""

    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)


def _pick(section: dict[str, Any], key: str, raw: dict[str, Any], default: Any) -> Any:
    """Return the nested value, then the legacy flat value, then the default."""
    value = section.get(key)
    if value is None:
        value = raw.get(key)
    return default if value is None else value


def _section(parent: dict[str, Any], key: str, name: str) -> dict[str, Any]:
    value = parent.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(
            "Invalid configuration", {"errors": [f"{name} must be an object"]}
        )
    return value


def normalize_config(raw: dict[str, Any]) -> NormalizedConfig:
    """
    Normalize a raw module configuration.

    Nested ``connection``, ``polling`` and ``display`` sections win over the
    legacy flat keys; missing values fall back to defaults.

    Args:
        raw: Configuration as sent by the consumer (camelCase keys)

    Returns:
        Normalized configuration

    Raises:
        ConfigurationError: If a section is not an object or a value has the
            wrong type. The individual messages are in ``context["errors"]``.
    """
    if not isinstance(raw, dict):
        raise ConfigurationError(
            "Invalid configuration", {"errors": ["Configuration must be an object"]}
        )

    connection = _section(raw, "connection", "connection")
    polling = _section(raw, "polling", "polling")
    display = _section(raw, "display", "display")
    tls = _section(connection, "tls", "connection.tls")

    def tls_value(key: str, default: Any = None) -> Any:
        value = tls.get(key)
        return default if value is None else value

    def polling_value(key: str, default: Any) -> Any:
        value = polling.get(key)
        return default if value is None else value

    known_display = {"maxItems", "viewFilter", "compact", "scale"}
    extra_display = {k: v for k, v in display.items() if k not in known_display}

    try:
        return NormalizedConfig(
            connection=ConnectionConfig(
                host=_pick(connection, "host", raw, ""),
                username=_pick(connection, "username", raw, ""),
                password=_pick(connection, "password", raw, ""),
                tls=TlsConfig(
                    reject_unauthorized=tls_value("rejectUnauthorized", True),
                    ca=tls_value("ca"),
                    cert=tls_value("cert"),
                    key=tls_value("key"),
                    passphrase=tls_value("passphrase"),
                    min_version=tls_value("minVersion", "TLSv1.2"),
                    max_version=tls_value("maxVersion"),
                ),
            ),
            polling=PollingConfig(
                update_interval=_pick(
                    polling, "updateInterval", raw, DEFAULT_UPDATE_INTERVAL_MS
                ),
                poll_timeout=polling_value("pollTimeout", DEFAULT_POLL_TIMEOUT_MS),
                max_consecutive_failures=polling_value(
                    "maxConsecutiveFailures", DEFAULT_MAX_CONSECUTIVE_FAILURES
                ),
                pause_on_repeated_failures=polling_value(
                    "pauseOnRepeatedFailures", False
                ),
                max_backoff_interval=polling_value(
                    "maxBackoffInterval", DEFAULT_MAX_BACKOFF_INTERVAL_MS
                ),
            ),
            display=DisplayConfig(
                max_items=_pick(display, "maxItems", raw, 5),
                view_filter=_pick(display, "viewFilter", raw, "all"),
                compact=_pick(display, "compact", raw, False),
                scale=_pick(display, "scale", raw, 0.6),
                **extra_display,
            ),
        )
    except ValidationError as e:
        errors = [
            f"{e.title}.{'.'.join(str(p) for p in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
        raise ConfigurationError("Invalid configuration", {"errors": errors}) from e


def resolve_cert_path(file_path: str, base_dir: Path) -> Path:
    """Resolve a TLS file path; relative paths are taken from base_dir."""
    path = Path(file_path)
    if path.is_absolute():
        return path
    return (base_dir / path).resolve()


def validate_config(config: NormalizedConfig, base_dir: Path) -> list[str]:
    """
    Run static sanity checks on a normalized configuration.

    Args:
        config: Normalized configuration
        base_dir: Directory relative TLS paths are resolved against

    Returns:
        List of error messages, empty when the configuration is usable
    """
    errors: list[str] = []
    connection = config.connection
    polling = config.polling

    if not connection.host:
        errors.append("Host is required")
    elif not connection.host.lower().startswith(("http://", "https://")):
        errors.append("Host must start with http:// or https://")

    if polling.update_interval < MIN_UPDATE_INTERVAL_MS:
        errors.append(
            f"Update interval must be at least {MIN_UPDATE_INTERVAL_MS}ms"
        )

    if polling.poll_timeout < MIN_POLL_TIMEOUT_MS:
        errors.append(f"Poll timeout must be at least {MIN_POLL_TIMEOUT_MS}ms")

    tls = connection.tls

    if tls.cert and not tls.key:
        errors.append("Client certificate requires a private key (tls.key)")

    if tls.key and not tls.cert:
        errors.append("Private key requires a client certificate (tls.cert)")

    if tls.reject_unauthorized is False:
        logger.warning(
            "SSL certificate validation is disabled. Use only for development."
        )

    for ca_path in tls.ca_paths:
        resolved = resolve_cert_path(ca_path, base_dir)
        if not resolved.exists():
            errors.append(f"CA certificate not found: {resolved}")

    if tls.cert:
        resolved = resolve_cert_path(tls.cert, base_dir)
        if not resolved.exists():
            errors.append(f"Client certificate not found: {resolved}")

    if tls.key:
        resolved = resolve_cert_path(tls.key, base_dir)
        if not resolved.exists():
            errors.append(f"Private key not found: {resolved}")
        else:
            _warn_on_key_permissions(resolved)

    if errors:
        logger.error("Config validation errors", errors=errors)

    return errors


def _warn_on_key_permissions(key_path: Path) -> None:
    """Log a warning when a private key is readable by others."""
    try:
        mode = stat.S_IMODE(os.stat(key_path).st_mode)
    except OSError as e:
        logger.debug("Could not stat private key", path=str(key_path), error=str(e))
        return

    if mode not in (0o600, 0o400):
        logger.warning(
            "Private key file has overly permissive permissions",
            path=str(key_path),
            mode=oct(mode),
            hint=f"chmod 600 {key_path}",
        )


class Settings(BaseSettings):
    """Process settings for the standalone runner."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Connection
    qbt_host: str = Field(default="", description="qBittorrent Web UI URL")
    qbt_username: str = Field(default="", description="Web UI username")
    qbt_password: str = Field(default="", description="Web UI password")

    # Polling
    qbt_update_interval_ms: int = Field(
        default=DEFAULT_UPDATE_INTERVAL_MS, description="Base poll interval"
    )
    qbt_poll_timeout_ms: int = Field(
        default=DEFAULT_POLL_TIMEOUT_MS, description="Per-request timeout"
    )
    qbt_max_consecutive_failures: int = Field(
        default=DEFAULT_MAX_CONSECUTIVE_FAILURES,
        description="Failures before retrying is considered over",
    )
    qbt_pause_on_repeated_failures: bool = Field(
        default=False, description="Pause polling after repeated failures"
    )
    qbt_max_backoff_interval_ms: int = Field(
        default=DEFAULT_MAX_BACKOFF_INTERVAL_MS, description="Backoff ceiling"
    )

    # TLS
    qbt_tls_reject_unauthorized: bool = Field(
        default=True, description="Validate the server certificate"
    )
    qbt_tls_ca: str | list[str] = Field(
        default="", description="CA bundle paths (comma-separated)"
    )
    qbt_tls_cert: str = Field(default="", description="Client certificate path")
    qbt_tls_key: str = Field(default="", description="Client private key path")
    qbt_tls_passphrase: str = Field(default="", description="Private key passphrase")
    qbt_tls_min_version: str = Field(default="TLSv1.2", description="Minimum TLS")
    qbt_tls_max_version: str = Field(default="", description="Maximum TLS")
    cert_base_dir: str = Field(
        default_factory=lambda: str(Path.cwd()),
        description="Directory relative TLS paths are resolved against",
    )

    # Logging configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format")

    # Health endpoint
    health_port: int = Field(default=8001, description="Health check port")

    @field_validator("qbt_tls_ca", mode="before")
    @classmethod
    def parse_ca_paths(cls, v: Any) -> list[str]:
        """Parse CA paths from comma-separated string or list."""
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        elif isinstance(v, list):
            return v
        else:
            error_msg = f"qbt_tls_ca must be a string or list, got {type(v)}"
            raise ValueError(error_msg)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v not in {"json", "console"}:
            raise ValueError(f"Invalid log format: {v}")
        return v

    @property
    def base_dir(self) -> Path:
        """Get the TLS base directory."""
        return Path(self.cert_base_dir)

    def module_config(self) -> dict[str, Any]:
        """Render the settings as a raw module configuration."""
        tls: dict[str, Any] = {
            "rejectUnauthorized": self.qbt_tls_reject_unauthorized,
            "minVersion": self.qbt_tls_min_version or None,
            "maxVersion": self.qbt_tls_max_version or None,
        }
        if self.qbt_tls_ca:
            tls["ca"] = self.qbt_tls_ca
        if self.qbt_tls_cert:
            tls["cert"] = self.qbt_tls_cert
        if self.qbt_tls_key:
            tls["key"] = self.qbt_tls_key
        if self.qbt_tls_passphrase:
            tls["passphrase"] = self.qbt_tls_passphrase

        return {
            "connection": {
                "host": self.qbt_host,
                "username": self.qbt_username,
                "password": self.qbt_password,
                "tls": tls,
            },
            "polling": {
                "updateInterval": self.qbt_update_interval_ms,
                "pollTimeout": self.qbt_poll_timeout_ms,
                "maxConsecutiveFailures": self.qbt_max_consecutive_failures,
                "pauseOnRepeatedFailures": self.qbt_pause_on_repeated_failures,
                "maxBackoffInterval": self.qbt_max_backoff_interval_ms,
            },
        }


# Global settings instance - initialized lazily to avoid import-time errors
_settings_instance = None


def get_settings() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance
