"""Configuration management for audio-mesh.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (AUDIO_MESH_SIGNALING_WS, AUDIO_MESH_CONNECT_TIMEOUT)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- audio-mesh.toml in current working directory
- ~/.audio-mesh/config.toml

Environment selection via AUDIO_MESH_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [environments.production]
    signaling_websocket = "wss://relay.example.com"
    connect_timeout = 15

    [[environments.production.ice_servers]]
    urls = ["turn:turn.example.com:3478"]
    username = "user"
    credential = "secret"
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer
from loguru import logger


@dataclass
class IceServerConfig:
    """Configuration for a single STUN/TURN server.

    Attributes:
        urls: One or more ``stun:``/``turn:`` URLs.
        username: TURN username, if required.
        credential: TURN credential, if required.
    """

    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        """Validate ICE server configuration after initialization."""
        if isinstance(self.urls, str):
            self.urls = [self.urls]
        if not self.urls:
            raise ValueError("ICE server urls cannot be empty")
        for url in self.urls:
            if not isinstance(url, str) or not url.startswith(("stun:", "turn:", "turns:")):
                raise ValueError(f"Invalid ICE server url: {url!r}")

    @classmethod
    def from_dict(cls, data: dict) -> "IceServerConfig":
        """Create IceServerConfig from a TOML ``[[ice_servers]]`` entry."""
        if "urls" not in data:
            raise ValueError("ICE server entry is missing 'urls'")
        return cls(
            urls=data["urls"],
            username=data.get("username"),
            credential=data.get("credential"),
        )

    def to_rtc(self) -> RTCIceServer:
        return RTCIceServer(
            urls=self.urls, username=self.username, credential=self.credential
        )


# Default signaling server URL (local development relay)
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"
DEFAULT_CONNECT_TIMEOUT = 10.0

DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
    "stun:stun4.l.google.com:19302",
]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


def _default_ice_servers() -> List[IceServerConfig]:
    return [IceServerConfig(urls=[url]) for url in DEFAULT_ICE_SERVERS]


class Config:
    """Configuration manager for audio-mesh."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
        self.ice_servers: List[IceServerConfig] = _default_ice_servers()
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (AUDIO_MESH_SIGNALING_WS, AUDIO_MESH_CONNECT_TIMEOUT)
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from AUDIO_MESH_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("AUDIO_MESH_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid AUDIO_MESH_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. audio-mesh.toml in current working directory
        2. ~/.audio-mesh/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "audio-mesh.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".audio-mesh" / "config.toml"
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

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )

        if "connect_timeout" in env_config:
            self._set_connect_timeout(env_config["connect_timeout"], "config file")

        if "ice_servers" in env_config:
            servers = []
            for entry in env_config["ice_servers"]:
                try:
                    servers.append(IceServerConfig.from_dict(entry))
                except (TypeError, ValueError) as e:
                    logger.warning(f"Skipping invalid ICE server entry: {e}")
            self.ice_servers = servers
            logger.debug(f"Loaded {len(servers)} ICE server(s) from config")

    def _set_connect_timeout(self, value, source: str) -> None:
        try:
            timeout = float(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid connect_timeout from {source}: {value!r}")
            return
        if timeout <= 0:
            logger.warning(f"Ignoring non-positive connect_timeout from {source}: {timeout}")
            return
        self.connect_timeout = timeout

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("AUDIO_MESH_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        timeout_override = os.getenv("AUDIO_MESH_CONNECT_TIMEOUT")
        if timeout_override:
            self._set_connect_timeout(timeout_override, "env")

    def rtc_configuration(self) -> RTCConfiguration:
        """Build the aiortc configuration for new peer connections."""
        return RTCConfiguration(iceServers=[s.to_rtc() for s in self.ice_servers])


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
