"""
btmesh-operator: entry point.

Reads configuration from the environment, connects to the registry and
the MQTT integration, then reconciles until signalled.
"""
import asyncio
import sys
from .adapters.mqtt_channel import MqttChannel
from .adapters.registry import DrogueRegistryClient
from .core.config import OperatorConfig
from .core.errors import AuthenticationError, ConfigError, TransportUnavailable
from .core.logger import configure_logging, get_logger
from .reconciler.engine import Operator

def build_operator(config: OperatorConfig) -> Operator:
    registry = DrogueRegistryClient(
        config.registry_url,
        config.application,
        config.token,
        user=config.user,
        timeout=config.registry_timeout,
    )
    channel = MqttChannel(
        config.mqtt,
        config.application,
        config.token,
        user=config.user,
        group_id=config.group_id,
        insecure=config.mqtt_insecure,
    )
    return Operator(config, registry, channel)

def main() -> int:
    configure_logging()
    logger = get_logger("Main")

    try:
        config = OperatorConfig.from_env()
    except ConfigError as e:
        logger.critical("invalid_configuration", error=str(e))
        return 2

    configure_logging(config.log_level)
    logger = get_logger("Main")

    try:
        asyncio.run(build_operator(config).run())
    except (AuthenticationError, TransportUnavailable) as e:
        logger.critical("startup_failed", error=str(e), kind=type(e).__name__)
        return 1
    except KeyboardInterrupt:
        pass
    return 0

if __name__ == "__main__":
    sys.exit(main())
