"""Configuration management for duo-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (DUO_RTC_SIGNALING_WS, DUO_RTC_HOST, DUO_RTC_PORT,
   DUO_RTC_ICE_SERVERS_URL, DUO_RTC_NEGOTIATION_TIMEOUT)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- duo-rtc.toml in current working directory
- ~/.duo-rtc/config.toml

Environment selection via DUO_RTC_ENV (development, staging, production).
Defaults to production if not set. An ``[environments.<name>]`` table in the
config file overrides the ``[server]`` and ``[peer]`` tables for that environment.

Example duo-rtc.toml::

    [server]
    host = "0.0.0.0"
    port = 8080

    [[server.ice_servers]]
    urls = "stun:stun.l.google.com:19302"

    [peer]
    signaling_websocket = "ws://signal.example.com:8080"
    ice_servers_url = "https://signal.example.com/turn-credentials"
    negotiation_timeout = 45

    [environments.development]
    signaling_websocket = "ws://localhost:8080"
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8080
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"
DEFAULT_NEGOTIATION_TIMEOUT = 30.0
DEFAULT_CREDENTIAL_TIMEOUT = 5.0

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class IceServerConfig:
    """A single ICE (STUN/TURN) server descriptor.

    Attributes:
        urls: Server URL, or list of URLs, e.g. ``stun:stun.l.google.com:19302``.
        username: Optional short-lived TURN username.
        credential: Optional short-lived TURN secret.
    """

    urls: Any
    username: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        """Validate the descriptor after initialization."""
        if not self.urls:
            raise ValueError("ICE server urls cannot be empty")

    @classmethod
    def from_dict(cls, data: dict) -> "IceServerConfig":
        """Create an IceServerConfig from a TOML or JSON dictionary.

        Accepts both ``urls`` and the legacy single ``url`` key.
        """
        urls = data.get("urls", data.get("url"))
        return cls(
            urls=urls,
            username=data.get("username"),
            credential=data.get("credential"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return the descriptor in RTCIceServer keyword form."""
        server: Dict[str, Any] = {"urls": self.urls}
        if self.username is not None:
            server["username"] = self.username
        if self.credential is not None:
            server["credential"] = self.credential
        return server


class Config:
    """Configuration manager for duo-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.host: str = DEFAULT_HOST
        self.port: int = DEFAULT_PORT
        self.server_ice_servers: List[IceServerConfig] = []
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.ice_servers_url: Optional[str] = None
        self.negotiation_timeout: Optional[float] = DEFAULT_NEGOTIATION_TIMEOUT
        self.credential_timeout: float = DEFAULT_CREDENTIAL_TIMEOUT
        self.environment: str = "production"
        self.config_file: Optional[Path] = None
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from DUO_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("DUO_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid DUO_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. duo-rtc.toml in current working directory
        2. ~/.duo-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "duo-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".duo-rtc" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        self.config_file = config_file

        self._apply_section(self._config_data.get("server", {}))
        self._apply_section(self._config_data.get("peer", {}))

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if env_config:
            logger.debug(f"Applying '{self.environment}' settings from {config_file}")
            self._apply_section(env_config)

    def _apply_section(self, section: dict) -> None:
        """Apply one TOML table. Unknown keys are ignored, bad values are logged."""
        if "host" in section:
            self.host = str(section["host"])
        if "port" in section:
            self.port = self._coerce(section["port"], int, "port", self.port)
        if "signaling_websocket" in section:
            self.signaling_websocket = str(section["signaling_websocket"])
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )
        if "ice_servers_url" in section:
            self.ice_servers_url = section["ice_servers_url"] or None
        if "negotiation_timeout" in section:
            self.negotiation_timeout = self._parse_timeout(section["negotiation_timeout"])
        if "credential_timeout" in section:
            self.credential_timeout = self._coerce(
                section["credential_timeout"], float, "credential_timeout",
                self.credential_timeout,
            )
        if "ice_servers" in section:
            self.server_ice_servers = self._parse_ice_servers(section["ice_servers"])

    def _parse_ice_servers(self, entries) -> List[IceServerConfig]:
        servers = []
        for entry in entries or []:
            if not isinstance(entry, dict):
                logger.warning(f"Skipping invalid ICE server entry: {entry}")
                continue
            try:
                servers.append(IceServerConfig.from_dict(entry))
            except ValueError as e:
                logger.warning(f"Skipping invalid ICE server entry: {e}")
        return servers

    def _parse_timeout(self, value) -> Optional[float]:
        # 0 or a negative value disables the negotiation deadline
        timeout = self._coerce(value, float, "negotiation_timeout", self.negotiation_timeout)
        if timeout is not None and timeout <= 0:
            return None
        return timeout

    @staticmethod
    def _coerce(value, kind, name, fallback):
        try:
            return kind(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid value for {name}: {value!r}. Keeping {fallback!r}.")
            return fallback

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("DUO_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        host_override = os.getenv("DUO_RTC_HOST")
        if host_override:
            self.host = host_override
            logger.info(f"Overriding host from env: {self.host}")

        port_override = os.getenv("DUO_RTC_PORT")
        if port_override:
            self.port = self._coerce(port_override, int, "DUO_RTC_PORT", self.port)

        url_override = os.getenv("DUO_RTC_ICE_SERVERS_URL")
        if url_override:
            self.ice_servers_url = url_override
            logger.info(f"Overriding ice_servers_url from env: {self.ice_servers_url}")

        timeout_override = os.getenv("DUO_RTC_NEGOTIATION_TIMEOUT")
        if timeout_override:
            self.negotiation_timeout = self._parse_timeout(timeout_override)

    def get_websocket_url(self, port: int = DEFAULT_PORT) -> str:
        """Get the WebSocket signaling server URL.

        Args:
            port: Port number to use if not specified in URL (default: 8080).

        Returns:
            WebSocket URL with port.
        """
        url = self.signaling_websocket
        if ":" not in url.split("//")[-1]:
            url = f"{url}:{port}"
        return url

    def as_dict(self) -> Dict[str, Any]:
        """Return the resolved configuration for display."""
        return {
            "environment": self.environment,
            "config_file": str(self.config_file) if self.config_file else None,
            "server": {
                "host": self.host,
                "port": self.port,
                "ice_servers": [s.to_dict() for s in self.server_ice_servers],
            },
            "peer": {
                "signaling_websocket": self.get_websocket_url(),
                "ice_servers_url": self.ice_servers_url,
                "negotiation_timeout": self.negotiation_timeout,
                "credential_timeout": self.credential_timeout,
            },
        }


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
