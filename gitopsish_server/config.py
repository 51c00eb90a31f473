"""
Server configuration. Values come from init arguments, then the environment, then an optional
config file ($HOME/.gitopsish-server.{yaml,yml,json,toml} or --config), then defaults.
CLIENT_ID and CLIENT_SECRET are required.
"""
import json
import logging
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BeforeValidator, Field, SecretStr, ValidationError, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

logger = logging.getLogger(__name__)

APP_NAME = "gitopsish-server"
CONFIG_EXTENSIONS = (".yaml", ".yml", ".json", ".toml")

# Account whose followers are let through; overridable via TARGET_ACCOUNT
DEFAULT_TARGET_ACCOUNT = "igaskin"
DEFAULT_REDIRECT_URI = "http://localhost:9999/callback"
DEFAULT_SCOPES = "read:user"

GITHUB_URL = "https://github.com"
GITHUB_API_URL = "https://api.github.com"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ConfigError(ValueError):
    """Configuration is missing, unreadable or invalid."""


@dataclass(frozen=True)
class ProviderCredentials:
    client_id: str
    client_secret: str = field(repr=False)
    target_account: str = DEFAULT_TARGET_ACCOUNT
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: str = DEFAULT_SCOPES


def parse_duration(value: Any) -> float:
    """
    Seconds from a number or a Go-style duration string ("15s", "10m", "1h30m", "250ms").
    Bare numeric strings are seconds.
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ConfigError(f"Invalid duration: {value!r}") from None
            seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds


Duration = Annotated[float, BeforeValidator(parse_duration)]


def split_listen_address(address: str) -> tuple[str, int]:
    """Split "host:port" (host may be empty, meaning all interfaces)."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ConfigError(f"Invalid listen_address: {address!r}")
    port_num = int(port)
    if not 0 < port_num < 65536:
        raise ConfigError(f"Invalid listen_address port: {address!r}")
    return host.strip("[]") or "0.0.0.0", port_num


def find_config_file(home: Path | None = None) -> Path | None:
    """First $HOME/.gitopsish-server.<ext> that exists, if any."""
    home = home or Path.home()
    for ext in CONFIG_EXTENSIONS:
        candidate = home / f".{APP_NAME}{ext}"
        if candidate.is_file():
            return candidate
    return None


def read_config_file(path: Path) -> dict[str, Any]:
    """Parse a YAML, JSON or TOML config file into a flat dict of options."""
    suffix = path.suffix.lower()
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    try:
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(raw) or {}
        elif suffix == ".json":
            data = json.loads(raw)
        elif suffix == ".toml":
            data = tomllib.loads(raw.decode("utf-8"))
        else:
            raise ConfigError(f"Unsupported config file type: {path.name}")
    except (yaml.YAMLError, json.JSONDecodeError, tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping of options")
    return {str(k).lower().replace("-", "_"): v for k, v in data.items()}


class ConfigFileSettingsSource(PydanticBaseSettingsSource):
    """Options from the YAML/JSON/TOML file named by the config_file setting."""

    def __init__(self, settings_cls: type[BaseSettings], path: str | None) -> None:
        super().__init__(settings_cls)
        self._values = read_config_file(Path(path)) if path else {}

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._values.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        fields = self.settings_cls.model_fields
        return {k: v for k, v in self._values.items() if k in fields and k != "config_file"}


class Settings(BaseSettings):
    """gitopsish-server settings."""

    model_config = SettingsConfigDict(
        extra="ignore",
        frozen=True,
        str_strip_whitespace=True,
    )

    # GitHub OAuth app
    client_id: str = Field(min_length=1)
    client_secret: SecretStr
    target_account: str = Field(default=DEFAULT_TARGET_ACCOUNT, min_length=1)
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: str = DEFAULT_SCOPES

    # Listener
    listen_address: str = "127.0.0.1:9999"
    # Accepted for config compatibility; uvicorn has no per-connection read/write timeouts,
    # so these are validated but not applied. Outbound calls are bounded by provider_timeout.
    read_timeout: Duration = 15.0
    write_timeout: Duration = 15.0
    # Keep-alive timeout for idle connections
    idle_timeout: Duration = 60.0
    # Drain deadline for in-flight requests on shutdown
    shutdown_timeout: Duration = 10.0

    # Session ledger
    session_ttl: Duration = 600.0
    max_sessions: int = Field(default=10000, ge=1)

    # Outbound calls to GitHub
    provider_timeout: Duration = 10.0
    github_url: str = GITHUB_URL
    api_url: str = GITHUB_API_URL

    log_level: str = "INFO"
    config_file: str | None = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        config_file = getattr(init_settings, "init_kwargs", {}).get("config_file")
        return (init_settings, env_settings, ConfigFileSettingsSource(settings_cls, config_file))

    @field_validator("listen_address")
    @classmethod
    def _check_listen_address(cls, value: str) -> str:
        split_listen_address(value)
        return value

    @field_validator("github_url", "api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"Invalid log_level: {value!r}")
        return value

    @property
    def credentials(self) -> ProviderCredentials:
        return ProviderCredentials(
            client_id=self.client_id,
            client_secret=self.client_secret.get_secret_value(),
            target_account=self.target_account,
            redirect_uri=self.redirect_uri,
            scopes=self.scopes,
        )

    @property
    def host(self) -> str:
        return split_listen_address(self.listen_address)[0]

    @property
    def port(self) -> int:
        return split_listen_address(self.listen_address)[1]

    @property
    def sweep_interval(self) -> float:
        return max(1.0, self.session_ttl / 4)


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        name = ".".join(str(loc) for loc in err["loc"]).upper() or "SETTINGS"
        parts.append(f"{name}: {err['msg']}")
    return "; ".join(parts)


def load_settings(config_path: str | Path | None = None, home: Path | None = None) -> Settings:
    """
    Build Settings from environment, config file and defaults.
    An explicit config_path must exist; the $HOME lookup is optional.
    """
    if config_path is not None:
        path: Path | None = Path(config_path).expanduser()
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
    else:
        path = find_config_file(home)

    if path:
        logger.info("Using config file: %s", path)
    try:
        return Settings(config_file=str(path) if path else None)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {_describe(e)}") from e
