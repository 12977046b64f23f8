import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from ..core.clock import Clock
from ..core.errors import CommandTimeout, MaxRetriesExceeded, OperatorError, TransportUnavailable
from ..core.logger import get_logger
from ..core.types import CommandKind, ObservedState, RegistryDevice
from .backoff import ExponentialBackoff
from .device_table import DeviceState, DeviceTable
from .dispatcher import CommandDispatcher
from .snapshot import DeviceRecord, Snapshot, SnapshotReader
from .state_machine import (
    COMMAND_FOR,
    IN_PROGRESS,
    Action,
    Decision,
    on_dispatch_error,
    on_reset,
    on_success,
    on_timeout,
    plan,
)
from .status_writer import StatusUpdate, StatusWriter

logger = get_logger("ReconcileLoop")

# A device being deleted that we never saw provisioned has no node to reset.
_NOTHING_TO_RESET = (
    ObservedState.UNKNOWN,
    ObservedState.PENDING,
    ObservedState.UNPROVISIONED,
    ObservedState.FAILED,
)

@dataclass
class TickReport:
    """
    What one reconcile tick did.
    """
    skipped: bool = False
    devices: int = 0
    dispatched: int = 0
    timed_out: int = 0
    dispatch_errors: int = 0
    deferred: int = 0
    written: int = 0

class ReconcileLoop:
    """
    Read-diff-act over every tracked device, once per interval.

    Per tick: fetch a snapshot, merge it into the table, expire overdue
    commands, dispatch what the state machine asks for, write status back.
    A single device's failure never leaves its own reconciliation.
    """
    def __init__(
        self,
        reader: SnapshotReader,
        dispatcher: CommandDispatcher,
        writer: StatusWriter,
        table: DeviceTable,
        backoff: ExponentialBackoff,
        max_retries: int,
        interval: float,
        clock: Callable[[], float] = Clock.monotonic,
        act_budget: Optional[float] = None,
    ):
        self.reader = reader
        self.dispatcher = dispatcher
        self.writer = writer
        self.table = table
        self.backoff = backoff
        self.max_retries = max_retries
        self.interval = interval
        self.clock = clock
        # Wall time the act step may hold the table lock for.
        self.act_budget = act_budget if act_budget is not None else interval / 2
        self.running = False
        self.last_tick_at: Optional[float] = None
        self._wake = asyncio.Event()

    def wake(self):
        """Run the next tick now instead of at the end of the interval."""
        self._wake.set()

    def stop(self):
        self.running = False
        self._wake.set()

    async def run(self):
        logger.info("reconcile_loop_started", interval=self.interval)
        self.running = True
        while self.running:
            try:
                report = await self.tick()
                logger.info("reconcile_tick_complete",
                            skipped=report.skipped,
                            devices=report.devices,
                            dispatched=report.dispatched,
                            timed_out=report.timed_out,
                            deferred=report.deferred,
                            written=report.written)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Nothing at runtime may stop the loop.
                logger.exception("reconcile_tick_failed")

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
        logger.info("reconcile_loop_stopped")

    async def tick(self) -> TickReport:
        report = TickReport()
        try:
            snapshot = await self.reader.fetch()
        except TransportUnavailable as e:
            logger.warning("registry_unavailable", error=str(e))
            report.skipped = True
            # The loop is alive; an unreachable registry is not a reason to restart.
            self.last_tick_at = self.clock()
            return report

        async with self.table.lock:
            self.dispatcher.set_gateways(snapshot.gateways)
            self._merge(snapshot)
            report.timed_out = self._expire_commands()
            await self._act(report)
            updates = [StatusUpdate.from_device(d, self.table.next_version()) for d in self.table]
            report.devices = len(self.table)

        if report.deferred:
            logger.warning("reconcile_tick_deferred", deferred=report.deferred, budget=self.act_budget)
        report.written = await self._persist(updates, snapshot.documents)
        self.last_tick_at = self.clock()
        return report

    # --- Steps; all but _persist run under table.lock ---

    def _merge(self, snapshot: Snapshot):
        for device_id in self.table.device_ids():
            if device_id not in snapshot.devices:
                self.table.remove(device_id)
                self.writer.forget(device_id)
                logger.info("device_untracked", device=device_id)

        for record in snapshot.devices.values():
            device = self.table.get(record.device_id)
            if device is None:
                device = self._track(record)
            else:
                device.uuid = record.uuid
                device.deleting = record.deleting
                if record.desired is not device.desired_state:
                    logger.info("desired_state_changed",
                                device=device.device_id,
                                previous=device.desired_state.value,
                                desired=record.desired.value)
                    device.desired_state = record.desired
                    device.reset_retries()

            if record.reset_request and record.reset_request != device.reset_token:
                self._operator_reset(device, record.reset_request)

    def _track(self, record: DeviceRecord) -> DeviceState:
        device = DeviceState.from_status(record.device_id, record.desired, record.status, uuid=record.uuid)
        device.deleting = record.deleting
        # Failure recorded for an intent that has since changed.
        if device.failed_for is not None and device.failed_for is not device.desired_state:
            device.reset_retries()
        self.table.put(device)
        logger.info("device_tracked",
                    device=device.device_id,
                    desired=device.desired_state.value,
                    observed=device.observed_state.value)
        return device

    def _operator_reset(self, device: DeviceState, token: str):
        device.reset_token = token
        device.reset_retries()
        device.apply_outcome(on_reset(device.observed_state), Clock.wall_time_iso())
        device.record_error(None)
        logger.info("device_reset", device=device.device_id, observed=device.observed_state.value)

    def _expire_commands(self) -> int:
        now = self.clock()
        now_iso = Clock.wall_time_iso()
        expired = self.table.expired(now)
        for command in expired:
            self.table.pop(command.token)
            device = self.table.get(command.device_id)
            if device is None:
                continue
            error = CommandTimeout(device.device_id, command.token)
            outcome = on_timeout(device.observed_state, device.retry_count, device.failure_count, self.max_retries)
            device.apply_outcome(outcome, now_iso)
            device.record_error(str(error))
            if outcome.failed:
                logger.error("device_failed",
                             device=device.device_id,
                             error=str(MaxRetriesExceeded(device.device_id, device.failure_count, str(error))))
            else:
                device.next_attempt_at = self.backoff.next_attempt(now, device.failure_count)
                logger.warning("command_timeout",
                               device=device.device_id,
                               token=command.token,
                               retry_count=device.retry_count,
                               retry_in=self.backoff.delay(device.failure_count))
        return len(expired)

    async def _act(self, report: TickReport):
        loop = asyncio.get_running_loop()
        started = loop.time()
        for device in self.table:
            if loop.time() - started >= self.act_budget:
                report.deferred += 1
                continue
            try:
                result = await self._reconcile_device(device)
            except OperatorError as e:
                logger.warning("device_reconcile_error", device=device.device_id, error=str(e))
                continue
            except Exception:
                logger.exception("device_reconcile_failed", device=device.device_id)
                continue
            if result is True:
                report.dispatched += 1
            elif result is False:
                report.dispatch_errors += 1

    async def _reconcile_device(self, device: DeviceState) -> Optional[bool]:
        """
        Returns True if a command went out, False if dispatch failed,
        None if there was nothing to send.
        """
        now_iso = Clock.wall_time_iso()
        in_flight = self.table.in_flight_for(device.device_id)

        if (device.deleting and device.address is None and in_flight is None
                and device.observed_state in _NOTHING_TO_RESET):
            device.apply_outcome(on_success(CommandKind.UNPROVISION), now_iso)
            device.record_error(None)
            return None

        decision = plan(device.desired_state, device.observed_state, device.failed_for)
        if decision.action is Action.NONE:
            return None
        if in_flight is not None:
            # One command per device; wait for its ack or its deadline.
            return None
        if self.clock() < device.next_attempt_at:
            return None

        if decision.action is Action.AWAIT:
            # In progress but nothing in flight: timed out earlier, or we restarted.
            kind = COMMAND_FOR[device.desired_state]
        else:
            kind = decision.action.command_kind

        try:
            command = await self.dispatcher.dispatch(device, kind)
        except TransportUnavailable as e:
            outcome = on_dispatch_error(device.observed_state, device.retry_count, device.failure_count)
            device.apply_outcome(outcome, now_iso)
            device.record_error(str(e))
            logger.warning("dispatch_failed",
                           device=device.device_id,
                           kind=kind.value,
                           error=str(e),
                           retry_count=device.retry_count)
            return False

        device.last_command_id = command.token
        device.apply_decision(Decision(decision.action, IN_PROGRESS[kind]), now_iso)
        return True

    async def _persist(self, updates: List[StatusUpdate], documents: Dict[str, RegistryDevice]) -> int:
        written = 0
        for update in updates:
            try:
                if await self.writer.write(update, documents.get(update.device_id)):
                    written += 1
            except OperatorError as e:
                logger.warning("status_write_failed", device=update.device_id, error=str(e))
        return written
