import asyncio
import uuid
from typing import Callable, List, Optional
from ..adapters.interfaces import ChannelInterface
from ..core.clock import Clock
from ..core.errors import TransportUnavailable
from ..core.logger import get_logger
from ..core.types import (
    BtMeshCommand,
    BtMeshOperation,
    Command,
    CommandKind,
    ProvisionOperation,
    ResetOperation,
)
from .device_table import DeviceState, DeviceTable

logger = get_logger("CommandDispatcher")

def new_token() -> str:
    return uuid.uuid4().hex

def build_command(device: DeviceState, kind: CommandKind, token: str) -> BtMeshCommand:
    """
    Provisioning addresses the node by mesh UUID; reset addresses it by
    registry name and unicast address.
    """
    if kind is CommandKind.PROVISION:
        operation = BtMeshOperation(provision=ProvisionOperation(device=device.uuid or device.device_id))
    else:
        operation = BtMeshOperation(reset=ResetOperation(device=device.device_id, address=device.address))
    return BtMeshCommand(command=operation, correlation_id=token)

class CommandDispatcher:
    """
    Turns a state machine action into a command on the gateway channel.
    The caller MUST hold table.lock: the in-flight check, the publish and
    the registration happen as one step.
    """
    def __init__(
        self,
        channel: ChannelInterface,
        table: DeviceTable,
        application: str,
        command_timeout: float,
        publish_timeout: float = 5.0,
        clock: Callable[[], float] = Clock.monotonic,
        token_factory: Callable[[], str] = new_token,
    ):
        self.channel = channel
        self.table = table
        self.application = application
        self.command_timeout = command_timeout
        self.publish_timeout = publish_timeout
        self.clock = clock
        self.token_factory = token_factory
        self.gateways: List[str] = []

    def set_gateways(self, gateways: List[str]):
        if sorted(gateways) != sorted(self.gateways):
            logger.info("gateways_loaded", gateways=gateways)
        self.gateways = list(gateways)

    def command_topic(self, gateway: str) -> str:
        return f"command/{self.application}/{gateway}/btmesh"

    async def dispatch(self, device: DeviceState, kind: CommandKind) -> Command:
        """
        Publishes the command to every known gateway and records it in flight.
        Raises TransportUnavailable if no gateway accepted it.
        """
        existing: Optional[Command] = self.table.in_flight_for(device.device_id)
        if existing is not None:
            raise RuntimeError(f"Command {existing.token} already in flight for {device.device_id}")

        if not self.gateways:
            raise TransportUnavailable("No gateways known")

        token = self.token_factory()
        payload = build_command(device, kind, token).to_bytes()

        # One deadline for the whole fan-out, not one per gateway.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.publish_timeout
        delivered = 0
        last_error: Optional[str] = None
        for gateway in self.gateways:
            remaining = deadline - loop.time()
            if remaining <= 0:
                last_error = last_error or "Publish time limit reached"
                logger.warning("command_publish_skipped", gateway=gateway, device=device.device_id)
                continue
            try:
                await asyncio.wait_for(
                    self.channel.publish(self.command_topic(gateway), payload),
                    timeout=remaining,
                )
                delivered += 1
            except asyncio.TimeoutError:
                last_error = f"Publish to gateway {gateway} timed out"
                logger.warning("command_publish_timeout", gateway=gateway, device=device.device_id)
            except TransportUnavailable as e:
                last_error = str(e)
                logger.warning("command_publish_failed", gateway=gateway, device=device.device_id, error=str(e))

        if delivered == 0:
            raise TransportUnavailable(last_error or "Command not accepted by any gateway")

        now = self.clock()
        command = Command(
            token=token,
            device_id=device.device_id,
            kind=kind,
            issued_at=now,
            deadline=now + self.command_timeout,
        )
        self.table.register(command)
        logger.info("command_dispatched",
                    device=device.device_id,
                    kind=kind.value,
                    token=token,
                    gateways=delivered)
        return command
