"""Configuration management for ServerNap."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

from .utils import load_server_icon, validate_port


logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings for one run, built once from the CLI and the config file."""

    host: str
    port: int
    command: str
    args: Tuple[str, ...] = ()
    rcon_host: str = "127.0.0.1"
    rcon_port: int = 25575
    rcon_pass: str = ""
    rcon_timeout_secs: float = 5.0
    max_consecutive_failures: int = 5
    idle_timeout_secs: float = 600.0
    poll_interval_secs: float = 60.0
    handshake_timeout_secs: float = 5.0
    startup_timeout_secs: float = 600.0
    stop_grace_secs: float = 60.0
    relisten_after_stop: bool = False
    protocol_version: int = 766
    version_name: str = "ServerNap (1.20.5)"
    max_players_display: int = 0
    motd_text: str = "Napping... Join to start server"
    motd_color: str = "aqua"
    motd_bold: bool = True
    connection_msg_text: str = "Server is now starting up. Please wait and try again shortly..."
    connection_msg_color: str = "light_purple"
    connection_msg_bold: bool = True
    server_icon: Optional[str] = field(default=None, repr=False)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.json"):
        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        self._default_config = self._get_default_config()

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration values."""
        return {
            "minecraft": {
                "protocol_version": 766,
                "version_name": "ServerNap (1.20.5)",
                "max_players_display": 0,
                "motd_text": "Napping... Join to start server",
                "motd_color": "aqua",
                "motd_bold": True,
                "connection_msg_text": "Server is now starting up. Please wait and try again shortly...",
                "connection_msg_color": "light_purple",
                "connection_msg_bold": True,
                "server_icon": None
            },
            "rcon": {
                "host": "127.0.0.1",
                "timeout_seconds": 5,
                "max_consecutive_failures": 5
            },
            "timing": {
                "poll_interval_seconds": 60,
                "idle_timeout_seconds": 600,
                "handshake_timeout_seconds": 5,
                "startup_timeout_seconds": 600,
                "stop_grace_seconds": 60
            },
            "lifecycle": {
                "relisten_after_stop": False
            },
            "logging": {
                "level": "INFO",
                "file": "servernap.log",
                "max_size_mb": 10,
                "backup_count": 3,
                "console_output": True
            },
            "monitoring": {
                "health_check_enabled": False,
                "status_endpoint_port": 8080
            }
        }

    def load_config(self) -> Dict[str, Any]:
        """Load configuration from file with validation."""
        try:
            if not self.config_path.exists():
                logger.warning(f"Config file {self.config_path} not found, using defaults")
                self._config = self._merge_config(self._default_config, {})
                return self._config

            with open(self.config_path, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)

            if not isinstance(loaded_config, dict):
                raise ValueError(
                    f"Configuration file must contain a JSON object, got {type(loaded_config).__name__}"
                )

            # Merge with defaults to ensure all keys exist
            self._config = self._merge_config(self._default_config, loaded_config)

            self._validate_config()

            logger.info(f"Configuration loaded successfully from {self.config_path}")
            return self._config

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in config file: {e}")
            raise ValueError(f"Configuration file contains invalid JSON: {e}") from e

    def _merge_config(self, default: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge loaded config with defaults."""
        result = {
            key: self._merge_config(value, {}) if isinstance(value, dict) else value
            for key, value in default.items()
        }

        for key, value in loaded.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _validate_config(self) -> None:
        """Validate configuration values."""
        errors = []

        # A section replaced by a non-object cannot be checked key by key
        for section in self._default_config:
            value = self._config.get(section)
            if not isinstance(value, dict):
                errors.append(f"Invalid section {section}: {value!r} (expected an object)")
        if errors:
            self._raise_validation_errors(errors)

        minecraft = self._config["minecraft"]
        if not isinstance(minecraft["protocol_version"], int) or minecraft["protocol_version"] < 0:
            errors.append(f"Invalid protocol version: {minecraft['protocol_version']}")
        if not isinstance(minecraft["max_players_display"], int) or minecraft["max_players_display"] < 0:
            errors.append(f"Invalid max players display: {minecraft['max_players_display']}")
        for key in ("motd_text", "motd_color", "connection_msg_text", "connection_msg_color", "version_name"):
            if not isinstance(minecraft[key], str):
                errors.append(f"Invalid minecraft.{key}: {minecraft[key]!r} (expected a string)")
        for key in ("motd_bold", "connection_msg_bold"):
            if not isinstance(minecraft[key], bool):
                errors.append(f"Invalid minecraft.{key}: {minecraft[key]!r} (expected true/false)")
        if minecraft["server_icon"] is not None and not isinstance(minecraft["server_icon"], str):
            errors.append(f"Invalid server icon path: {minecraft['server_icon']!r}")

        rcon = self._config["rcon"]
        if not isinstance(rcon["host"], str) or not rcon["host"]:
            errors.append(f"Invalid RCON host: {rcon['host']!r}")
        if not isinstance(rcon["max_consecutive_failures"], int) or rcon["max_consecutive_failures"] < 1:
            errors.append(f"Invalid rcon.max_consecutive_failures: {rcon['max_consecutive_failures']}")
        if not self._is_positive_number(rcon["timeout_seconds"]):
            errors.append(f"Invalid rcon.timeout_seconds: {rcon['timeout_seconds']}")

        # Validate timing values (skip comment fields)
        timing = self._config["timing"]
        for key, value in timing.items():
            if key.startswith('_comment'):
                continue
            if not self._is_positive_number(value):
                errors.append(f"Invalid timing value for {key}: {value}")

        if not isinstance(self._config["lifecycle"]["relisten_after_stop"], bool):
            errors.append("lifecycle.relisten_after_stop must be true or false")

        logging_config = self._config["logging"]
        log_level = str(logging_config["level"]).upper()
        if log_level not in VALID_LOG_LEVELS:
            errors.append(f"Invalid log level: {log_level}. Must be one of {VALID_LOG_LEVELS}")
        if not self._is_positive_number(logging_config["max_size_mb"]):
            errors.append(f"Invalid logging.max_size_mb: {logging_config['max_size_mb']!r}")
        backup_count = logging_config["backup_count"]
        if not isinstance(backup_count, int) or isinstance(backup_count, bool) or backup_count < 0:
            errors.append(f"Invalid logging.backup_count: {backup_count!r}")
        if logging_config["file"] is not None and not isinstance(logging_config["file"], str):
            errors.append(f"Invalid logging.file: {logging_config['file']!r}")
        if not isinstance(logging_config["console_output"], bool):
            errors.append("logging.console_output must be true or false")

        monitoring = self._config["monitoring"]
        if not isinstance(monitoring["health_check_enabled"], bool):
            errors.append("monitoring.health_check_enabled must be true or false")
        status_port = monitoring["status_endpoint_port"]
        if not validate_port(status_port):
            errors.append(f"Invalid status endpoint port: {status_port}")

        if errors:
            self._raise_validation_errors(errors)

    @staticmethod
    def _raise_validation_errors(errors) -> None:
        error_msg = "Configuration validation failed:\n" + "\n".join(errors)
        logger.error(error_msg)
        raise ValueError(error_msg)

    @staticmethod
    def _is_positive_number(value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'timing.poll_interval_seconds')."""
        keys = key_path.split('.')
        value = self._config

        try:
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def save_example_config(self, path: Optional[str] = None) -> None:
        """Save an example configuration file with comments."""
        if path is None:
            path = "config.json.example"

        defaults = self._get_default_config()
        example_config = {
            "_comment_minecraft": "Server list appearance and the message shown to joining players",
            "minecraft": {
                "_comment": "server_icon must be a 64x64 PNG",
                **defaults["minecraft"]
            },
            "_comment_rcon": "RCON connection used to poll players and stop the server",
            "rcon": defaults["rcon"],
            "_comment_timing": "Timing and timeout configuration",
            "timing": {
                "_comment": "All values in seconds",
                **defaults["timing"]
            },
            "_comment_lifecycle": "Listen again for the next player after an idle shutdown",
            "lifecycle": defaults["lifecycle"],
            "_comment_logging": "Logging configuration",
            "logging": defaults["logging"],
            "_comment_monitoring": "HTTP status endpoint",
            "monitoring": defaults["monitoring"]
        }

        with open(path, 'w', encoding='utf-8') as f:
            json.dump(example_config, f, indent=2, ensure_ascii=False)

        logger.info(f"Example configuration saved to {path}")


def build_run_config(config: Dict[str, Any], host: str, port: int, command: str,
                     args=(), rcon_port: int = 25575, rcon_pass: str = "") -> RunConfig:
    """Combine parsed CLI values with a loaded configuration dictionary."""
    if not validate_port(port, allow_zero=True):
        raise ValueError(f"Invalid listen port: {port}")
    if not validate_port(rcon_port):
        raise ValueError(f"Invalid RCON port: {rcon_port}")
    if not command:
        raise ValueError("A server command is required")

    minecraft = config["minecraft"]
    rcon = config["rcon"]
    timing = config["timing"]

    return RunConfig(
        host=host,
        port=int(port),
        command=command,
        args=tuple(args),
        rcon_host=rcon["host"],
        rcon_port=int(rcon_port),
        rcon_pass=rcon_pass,
        rcon_timeout_secs=float(rcon["timeout_seconds"]),
        max_consecutive_failures=int(rcon["max_consecutive_failures"]),
        idle_timeout_secs=float(timing["idle_timeout_seconds"]),
        poll_interval_secs=float(timing["poll_interval_seconds"]),
        handshake_timeout_secs=float(timing["handshake_timeout_seconds"]),
        startup_timeout_secs=float(timing["startup_timeout_seconds"]),
        stop_grace_secs=float(timing["stop_grace_seconds"]),
        relisten_after_stop=config["lifecycle"]["relisten_after_stop"],
        protocol_version=minecraft["protocol_version"],
        version_name=minecraft["version_name"],
        max_players_display=minecraft["max_players_display"],
        motd_text=minecraft["motd_text"],
        motd_color=minecraft["motd_color"],
        motd_bold=minecraft["motd_bold"],
        connection_msg_text=minecraft["connection_msg_text"],
        connection_msg_color=minecraft["connection_msg_color"],
        connection_msg_bold=minecraft["connection_msg_bold"],
        server_icon=load_server_icon(minecraft["server_icon"])
    )
