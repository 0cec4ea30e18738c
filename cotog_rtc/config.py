"""Configuration management for cotog-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (COTOG_RTC_SIGNALING_WS)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- cotog-rtc.toml in current working directory
- ~/.cotog-rtc/config.toml

Environment selection via COTOG_RTC_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [environments.development]
    signaling_websocket = "ws://localhost:8080"

    [session]
    connect_timeout = 20.0
    max_reconnect_attempts = 3

    [voice]
    ice_servers = [{ urls = "stun:stun.l.google.com:19302" }]

    [relay.rooms.R1]
    password = "letmein"
    owner = "alice"
"""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger


@dataclass
class SessionTimings:
    """Timing policy for the join handshake and reconnection.

    Attributes:
        connect_timeout: Seconds allowed for the WebSocket to open.
        join_timeout: Seconds allowed between sending join and receiving join-ack.
        debounce_interval: Minimum seconds between two connect() calls.
        max_reconnect_attempts: Reconnect ceiling before the session is dropped.
        backoff_base: First reconnect delay in seconds; doubles per attempt.
        backoff_cap: Upper bound for the reconnect delay.
        duplicate_recovery_delay: Pause between leave and re-join when the
            relay reports a duplicate membership.
    """

    connect_timeout: float = 20.0
    join_timeout: float = 20.0
    debounce_interval: float = 3.0
    max_reconnect_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 10.0
    duplicate_recovery_delay: float = 0.5

    def __post_init__(self):
        """Validate timing values after initialization."""
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts cannot be negative")
        for name in ("connect_timeout", "join_timeout", "backoff_base", "backoff_cap"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> "SessionTimings":
        """Create SessionTimings from a TOML [session] table.

        Unknown keys are skipped with a warning.

        Args:
            data: Dictionary from the TOML [session] section.

        Returns:
            SessionTimings instance.
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown [session] key: {key}")
                continue
            values[key] = value
        return cls(**values)


# Public STUN servers used when neither the relay nor the config supplies any
DEFAULT_ICE_SERVERS: List[Dict[str, Any]] = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
    {"urls": "stun:global.stun.twilio.com:3478"},
]


@dataclass
class VoiceSettings:
    """Configuration for the voice mesh.

    Attributes:
        ice_servers: RTCIceServer dictionaries (urls, username, credential).
        negotiation_timeout: Seconds a peer link may spend negotiating.
        media_timeout: Seconds allowed for opening the microphone.
        input_device: ffmpeg input device for the microphone.
        input_format: ffmpeg input format (e.g. "pulse", "avfoundation").
        output_device: ffmpeg output device for remote audio, or None to discard.
        output_format: ffmpeg output format for remote audio.
        echo_cancellation: Requested capture constraint.
        noise_suppression: Requested capture constraint.
        auto_gain_control: Requested capture constraint.
    """

    ice_servers: List[Dict[str, Any]] = field(
        default_factory=lambda: list(DEFAULT_ICE_SERVERS)
    )
    negotiation_timeout: float = 15.0
    media_timeout: float = 10.0
    input_device: str = "default"
    input_format: Optional[str] = "pulse"
    output_device: Optional[str] = None
    output_format: Optional[str] = None
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "VoiceSettings":
        """Create VoiceSettings from a TOML [voice] table.

        Args:
            data: Dictionary from the TOML [voice] section.

        Returns:
            VoiceSettings instance.
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown [voice] key: {key}")
                continue
            values[key] = value

        ice_servers = values.get("ice_servers")
        if ice_servers is not None:
            valid = []
            for server in ice_servers:
                if not isinstance(server, dict) or "urls" not in server:
                    logger.warning(f"Skipping invalid ICE server entry: {server}")
                    continue
                valid.append(server)
            values["ice_servers"] = valid

        return cls(**values)

    def media_constraints(self) -> Dict[str, bool]:
        """Capture constraints passed to the MediaProvider."""
        return {
            "echoCancellation": self.echo_cancellation,
            "noiseSuppression": self.noise_suppression,
            "autoGainControl": self.auto_gain_control,
        }


@dataclass
class RoomDefinition:
    """A room served by the development relay.

    Attributes:
        room_id: Room identifier.
        password: Room password checked on join.
        owner: Participant id that joins as owner.
        moderators: Participant ids that join as moderators.
        max_members: Member limit.
        name: Display name.
    """

    room_id: str
    password: str
    owner: Optional[str] = None
    moderators: List[str] = field(default_factory=list)
    max_members: int = 10
    name: str = ""

    def __post_init__(self):
        """Validate room definition after initialization."""
        if not self.room_id:
            raise ValueError("Room id cannot be empty")
        if self.max_members < 1:
            raise ValueError("max_members must be at least 1")


@dataclass
class RelayConfig:
    """Configuration for the development relay.

    Attributes:
        rooms: Rooms the relay serves, keyed by room id.
        tokens: Bearer token to participant id. Empty means the token itself
            is used as the participant id.
        history_limit: Number of chat messages replayed to joiners.
    """

    rooms: Dict[str, RoomDefinition] = field(default_factory=dict)
    tokens: Dict[str, str] = field(default_factory=dict)
    history_limit: int = 100

    @classmethod
    def from_dict(cls, data: dict) -> "RelayConfig":
        """Create RelayConfig from a TOML [relay] table.

        Args:
            data: Dictionary from the TOML [relay] section.

        Returns:
            RelayConfig instance.
        """
        rooms = {}
        for room_id, room_data in data.get("rooms", {}).items():
            if "password" not in room_data:
                logger.warning(f"Skipping room {room_id}: missing password")
                continue
            try:
                rooms[room_id] = RoomDefinition(
                    room_id=room_id,
                    password=room_data["password"],
                    owner=room_data.get("owner"),
                    moderators=list(room_data.get("moderators", [])),
                    max_members=room_data.get("max_members", 10),
                    name=room_data.get("name", room_id),
                )
            except ValueError as e:
                logger.warning(f"Skipping invalid room {room_id}: {e}")

        return cls(
            rooms=rooms,
            tokens=dict(data.get("tokens", {})),
            history_limit=data.get("history_limit", 100),
        )


# Default production signaling server URL
DEFAULT_SIGNALING_WEBSOCKET = "wss://cotog-relay.onrender.com"

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


class Config:
    """Configuration manager for cotog-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (COTOG_RTC_SIGNALING_WS)
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from COTOG_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("COTOG_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid COTOG_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. cotog-rtc.toml in current working directory
        2. ~/.cotog-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "cotog-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".cotog-rtc" / "config.toml"
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
            self._config_data = {}
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

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("COTOG_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

    def get_session_timings(self) -> SessionTimings:
        """Get the [session] timing policy from loaded config data.

        Returns:
            SessionTimings instance (defaults if the section is absent or invalid).
        """
        try:
            return SessionTimings.from_dict(self._config_data.get("session", {}))
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid [session] config: {e}. Using defaults.")
            return SessionTimings()

    def get_voice_settings(self) -> VoiceSettings:
        """Get the [voice] settings from loaded config data.

        Returns:
            VoiceSettings instance (defaults if the section is absent or invalid).
        """
        try:
            return VoiceSettings.from_dict(self._config_data.get("voice", {}))
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid [voice] config: {e}. Using defaults.")
            return VoiceSettings()

    def get_relay_config(self) -> RelayConfig:
        """Get the [relay] configuration from loaded config data.

        Returns:
            RelayConfig instance.
        """
        return RelayConfig.from_dict(self._config_data.get("relay", {}))

    def get_websocket_url(self, port: int = 8080) -> str:
        """Get the WebSocket signaling server URL.

        Args:
            port: Port number to use if not specified in URL (default: 8080).
                Secure (wss) URLs are returned unchanged.

        Returns:
            WebSocket URL with port.
        """
        url = self.signaling_websocket
        if url.startswith("wss://"):
            return url
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
