"""Configuration management for mesh-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (MESH_RTC_SIGNALING_WS, MESH_RTC_ROOM)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- mesh-rtc.toml in current working directory
- ~/.mesh-rtc/config.toml

Environment selection via MESH_RTC_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [environments.production]
    signaling_websocket = "wss://signal.example.org"
    default_room = "shared-doc"
    reconnect_timeout = 30
    ice_servers = [{ urls = "stun:stun.l.google.com:19302" }]

    [media]
    video_width = 640
    video_height = 480
    video_device = "/dev/video2"
"""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger


@dataclass
class MediaConfig:
    """Configuration for local capture devices.

    Attributes:
        video_width: Ideal capture width in pixels.
        video_height: Ideal capture height in pixels.
        framerate: Ideal capture frame rate.
        video_device: Device name/path override (platform default if None).
        video_format: FFmpeg input format override (e.g. "v4l2", "avfoundation").
        audio_device: Device name override (platform default if None).
        audio_format: FFmpeg input format override (e.g. "pulse", "alsa").
    """

    video_width: int = 640
    video_height: int = 480
    framerate: int = 30
    video_device: Optional[str] = None
    video_format: Optional[str] = None
    audio_device: Optional[str] = None
    audio_format: Optional[str] = None

    def __post_init__(self):
        """Validate media configuration after initialization."""
        if self.video_width <= 0 or self.video_height <= 0:
            raise ValueError("Video dimensions must be positive")
        if self.framerate <= 0:
            raise ValueError("Frame rate must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> "MediaConfig":
        """Create MediaConfig from a TOML ``[media]`` dictionary.

        Unknown keys are ignored with a warning.
        """
        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                logger.warning(f"Ignoring unknown media setting: {key}")
        return cls(**{key: value for key, value in data.items() if key in known})


# Default signaling server URL
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"

# Room every document shares unless told otherwise
DEFAULT_ROOM = "shared-doc"

DEFAULT_ICE_SERVERS: List[Dict[str, Any]] = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


class Config:
    """Configuration manager for mesh-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.default_room: str = DEFAULT_ROOM
        self.ice_servers: List[Dict[str, Any]] = [dict(s) for s in DEFAULT_ICE_SERVERS]
        self.reconnect_timeout: float = 30.0
        # None keeps the connection waiting for an answer indefinitely
        self.negotiation_timeout: Optional[float] = None
        self.max_reconnect_attempts: int = 5
        self.retry_delay: float = 5.0
        self.media: MediaConfig = MediaConfig()
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (MESH_RTC_SIGNALING_WS, MESH_RTC_ROOM)
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from MESH_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("MESH_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid MESH_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. mesh-rtc.toml in current working directory
        2. ~/.mesh-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "mesh-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".mesh-rtc" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        A malformed file is reported and otherwise ignored; defaults stay in effect.

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
            self._config_data = {}
            return

        media_data = self._config_data.get("media", {})
        if media_data:
            try:
                self.media = MediaConfig.from_dict(media_data)
            except (TypeError, ValueError) as e:
                logger.warning(f"Invalid [media] section in {config_file}: {e}")

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

        if "default_room" in env_config:
            self.default_room = env_config["default_room"]

        if "ice_servers" in env_config:
            self.ice_servers = self._parse_ice_servers(env_config["ice_servers"])

        for key in ("reconnect_timeout", "negotiation_timeout", "retry_delay"):
            if key in env_config:
                value = env_config[key]
                # 0 disables the negotiation timeout
                if key == "negotiation_timeout" and not value:
                    self.negotiation_timeout = None
                else:
                    setattr(self, key, float(value))

        if "max_reconnect_attempts" in env_config:
            self.max_reconnect_attempts = int(env_config["max_reconnect_attempts"])

    def _parse_ice_servers(self, entries: Any) -> List[Dict[str, Any]]:
        """Keep the ICE server entries that carry a ``urls`` field."""
        servers = []
        for entry in entries or []:
            if isinstance(entry, str):
                entry = {"urls": entry}
            if not isinstance(entry, dict) or "urls" not in entry:
                logger.warning(f"Skipping invalid ICE server entry: {entry}")
                continue
            servers.append(dict(entry))
        return servers

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("MESH_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        room_override = os.getenv("MESH_RTC_ROOM")
        if room_override:
            self.default_room = room_override
            logger.info(f"Overriding default_room from env: {self.default_room}")

    def get_websocket_url(self, port: int = 8080) -> str:
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
