"""
Relay Configuration

Centralized configuration for the WebSocket to TCP relay.
Built once at startup from environment variables and passed to the server.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass
class RelayConfig:
    """Relay server configuration."""
    # Listening address
    host: str = "0.0.0.0"
    port: int = 19198

    # Resource limits (0 = unlimited / disabled)
    max_sessions: int = 0
    connect_timeout: float = 0.0  # Seconds to wait for the TCP target
    idle_timeout: float = 0.0     # Seconds without traffic before teardown
    close_timeout: float = 5.0    # Seconds to flush TCP on teardown before aborting

    # Buffer sizes
    read_chunk_size: int = 65536
    max_message_size: int = 10 * 1024 * 1024  # 10MB max message

    # WebSocket keepalive (0 disables pings)
    ping_interval: float = 20.0
    ping_timeout: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    def __post_init__(self):
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be between 0 and 65535, got {self.port}")
        if self.max_sessions < 0:
            raise ValueError(f"max_sessions must not be negative, got {self.max_sessions}")
        if self.connect_timeout < 0 or self.idle_timeout < 0:
            raise ValueError("timeouts must not be negative")
        if self.close_timeout <= 0:
            raise ValueError(f"close_timeout must be positive, got {self.close_timeout}")
        if self.read_chunk_size <= 0:
            raise ValueError(f"read_chunk_size must be positive, got {self.read_chunk_size}")
        if self.max_message_size <= 0:
            raise ValueError(f"max_message_size must be positive, got {self.max_message_size}")
        if self.ping_interval < 0 or self.ping_timeout < 0:
            raise ValueError("ping settings must not be negative")


# Environment variable -> (field name, converter)
_ENV_FIELDS = {
    'WS_HOST': ('host', str),
    'WS_PORT': ('port', int),
    'WS_MAX_SESSIONS': ('max_sessions', int),
    'WS_CONNECT_TIMEOUT': ('connect_timeout', float),
    'WS_IDLE_TIMEOUT': ('idle_timeout', float),
    'WS_CLOSE_TIMEOUT': ('close_timeout', float),
    'WS_READ_CHUNK_SIZE': ('read_chunk_size', int),
    'WS_MAX_MESSAGE_SIZE': ('max_message_size', int),
    'WS_PING_INTERVAL': ('ping_interval', float),
    'WS_PING_TIMEOUT': ('ping_timeout', float),
    'WS_LOG_LEVEL': ('log_level', str),
}


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> RelayConfig:
    """Load configuration from environment variables.

    Unset or empty variables keep their defaults. Raises ValueError when a
    value cannot be converted or is out of range.
    """
    if environ is None:
        environ = os.environ

    overrides = {}
    for env_name, (field_name, convert) in _ENV_FIELDS.items():
        raw = environ.get(env_name)
        if not raw:
            continue
        try:
            overrides[field_name] = convert(raw)
        except ValueError:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from None

    if 'log_level' in overrides:
        overrides['log_level'] = overrides['log_level'].upper()

    return RelayConfig(**overrides)
