import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlparse
from .errors import ConfigError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}

def parse_duration(value: str) -> float:
    """
    Parses a human duration ("20s", "1m30s", "500ms", "2h") into seconds.
    A bare number is taken as seconds.
    """
    text = value.strip().lower()
    if not text:
        raise ConfigError("Empty duration")
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos and text[pos:match.start()].strip():
            raise ConfigError(f"Invalid duration: {value!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos == 0 or text[pos:].strip():
        raise ConfigError(f"Invalid duration: {value!r}")
    return total

@dataclass(frozen=True)
class MqttEndpoint:
    host: str
    port: int
    tls: bool

    @classmethod
    def parse(cls, value: str) -> "MqttEndpoint":
        """
        Accepts "mqtts://host:port", "mqtt://host:port", "ssl://host:port" or "host:port".
        Schemeless endpoints default to TLS, as the integration endpoint does.
        """
        if "://" not in value:
            value = f"mqtts://{value}"
        url = urlparse(value)
        if not url.hostname:
            raise ConfigError(f"Invalid MQTT endpoint: {value!r}")
        tls = url.scheme in ("mqtts", "ssl", "tls", "wss")
        port = url.port or (8883 if tls else 1883)
        return cls(host=url.hostname, port=port, tls=tls)

@dataclass(frozen=True)
class OperatorConfig:
    """
    Immutable process configuration. Read once at startup.
    """
    application: str
    registry_url: str
    token: str
    mqtt: MqttEndpoint
    user: Optional[str] = None
    group_id: Optional[str] = None
    mqtt_insecure: bool = False
    reconcile_interval: float = 20.0
    max_retries: int = 5
    backoff_factor: float = 2.0
    backoff_base: Optional[float] = None
    backoff_max: float = 300.0
    command_timeout: Optional[float] = None
    registry_timeout: float = 10.0
    health_port: int = 8080
    log_level: str = "INFO"

    def __post_init__(self):
        if self.reconcile_interval <= 0:
            raise ConfigError("RECONCILE_INTERVAL must be positive")
        if self.max_retries < 1:
            raise ConfigError("MAX_RETRIES must be at least 1")
        if self.backoff_factor <= 0:
            raise ConfigError("BACKOFF_FACTOR must be positive")
        if self.backoff_max <= 0:
            raise ConfigError("BACKOFF_MAX must be positive")

    @property
    def effective_command_timeout(self) -> float:
        """Deadline for an acknowledgment: interval x backoff factor unless set explicitly."""
        if self.command_timeout is not None:
            return self.command_timeout
        return self.reconcile_interval * self.backoff_factor

    @property
    def effective_backoff_base(self) -> float:
        if self.backoff_base is not None:
            return self.backoff_base
        return self.reconcile_interval

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "OperatorConfig":
        """Load configuration from environment variables."""
        env = os.environ if env is None else env

        def required(key: str) -> str:
            value = env.get(key)
            if not value:
                raise ConfigError(f"Missing required environment variable {key}")
            return value

        def duration(key: str, default: Optional[float]) -> Optional[float]:
            value = env.get(key)
            return parse_duration(value) if value else default

        def number(key: str, default, kind):
            value = env.get(key)
            if not value:
                return default
            try:
                return kind(value)
            except ValueError:
                raise ConfigError(f"Invalid value for {key}: {value!r}")

        return cls(
            application=required("DROGUE_APPLICATION"),
            registry_url=required("DROGUE_DEVICE_REGISTRY").rstrip("/"),
            token=required("DROGUE_TOKEN"),
            user=env.get("DROGUE_USER") or None,
            mqtt=MqttEndpoint.parse(required("DROGUE_MQTT_INTEGRATION")),
            group_id=env.get("MQTT_GROUP_ID") or None,
            mqtt_insecure=env.get("MQTT_INSECURE", "false").lower() in ("1", "true", "yes"),
            reconcile_interval=duration("RECONCILE_INTERVAL", 20.0),
            max_retries=number("MAX_RETRIES", 5, int),
            backoff_factor=number("BACKOFF_FACTOR", 2.0, float),
            backoff_base=duration("BACKOFF_BASE", None),
            backoff_max=duration("BACKOFF_MAX", 300.0),
            command_timeout=duration("COMMAND_TIMEOUT", None),
            registry_timeout=duration("REGISTRY_TIMEOUT", 10.0),
            health_port=number("HEALTH_PORT", 8080, int),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )
