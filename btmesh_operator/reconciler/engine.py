import asyncio
import signal
from typing import Callable, List, Optional
from ..adapters.health import HealthServer
from ..adapters.interfaces import ChannelInterface, RegistryInterface
from ..core.clock import Clock
from ..core.config import OperatorConfig
from ..core.errors import TransportUnavailable
from ..core.logger import get_logger
from .backoff import ExponentialBackoff
from .correlator import AckCorrelator
from .device_table import DeviceTable
from .dispatcher import CommandDispatcher
from .loop import ReconcileLoop
from .snapshot import SnapshotReader
from .status_writer import StatusWriter

logger = get_logger("Operator")

class Operator:
    """
    The single authority over device provisioning state.
    Wires the reconcile loop and the acknowledgment correlator around one
    shared device table and runs them side by side.
    """
    def __init__(
        self,
        config: OperatorConfig,
        registry: RegistryInterface,
        channel: ChannelInterface,
        clock: Callable[[], float] = Clock.monotonic,
        health: Optional[HealthServer] = None,
    ):
        self.config = config
        self.registry = registry
        self.channel = channel
        self.clock = clock

        self.table = DeviceTable()
        self.backoff = ExponentialBackoff(base=config.effective_backoff_base, cap=config.backoff_max)
        self.writer = StatusWriter(registry)
        self.dispatcher = CommandDispatcher(
            channel,
            self.table,
            application=config.application,
            command_timeout=config.effective_command_timeout,
            clock=clock,
        )
        self.loop = ReconcileLoop(
            SnapshotReader(registry),
            self.dispatcher,
            self.writer,
            self.table,
            self.backoff,
            max_retries=config.max_retries,
            interval=config.reconcile_interval,
            clock=clock,
        )
        self.correlator = AckCorrelator(
            self.table,
            self.writer,
            self.backoff,
            max_retries=config.max_retries,
            clock=clock,
            on_devices_changed=self.loop.wake,
        )
        self.health = health or HealthServer(self.is_healthy, port=config.health_port)
        self.running = False
        self.started_at: Optional[float] = None
        self._tasks: List[asyncio.Task] = []

    def is_healthy(self) -> bool:
        if not self.running or not self.channel.connected:
            return False
        now = self.clock()
        grace = 3 * self.config.reconcile_interval
        last = self.loop.last_tick_at if self.loop.last_tick_at is not None else self.started_at
        return last is not None and (now - last) <= grace

    async def start(self):
        """
        Connects to channel and registry. Credential problems and an
        unreachable channel are fatal here; nowhere else.
        """
        logger.info("operator_startup",
                    application=self.config.application,
                    interval=self.config.reconcile_interval,
                    max_retries=self.config.max_retries,
                    command_timeout=self.config.effective_command_timeout)

        await self.channel.connect()
        try:
            await self.registry.list_devices()
        except TransportUnavailable as e:
            # Reachability is the loop's problem; credentials are checked above.
            logger.warning("registry_unavailable_at_startup", error=str(e))

        self.running = True
        self.started_at = self.clock()
        await self.health.start()

    async def consume_events(self):
        logger.info("processing_events")
        async for payload in self.channel.listen():
            try:
                await self.correlator.on_message(payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("event_processing_failed")

    async def run(self):
        await self.start()

        self._tasks = [
            asyncio.create_task(self.loop.run(), name="reconcile-loop"),
            asyncio.create_task(self.consume_events(), name="ack-correlator"),
        ]

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self.shutdown(s)))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("tasks_cancelled")
        finally:
            await self.shutdown(signal.SIGTERM)

    async def shutdown(self, sig=None):
        if not self.running:
            return
        logger.info("shutdown_signal_received", signal=sig.name if hasattr(sig, "name") else str(sig))
        self.running = False
        self.loop.stop()

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()

        await self.health.stop()
        await self.channel.close()
        await self.registry.close()
        logger.info("shutdown_complete")
