import base64
import binascii
import json
from typing import Callable, Optional, Tuple
from pydantic import ValidationError
from ..core.clock import Clock
from ..core.errors import MalformedMessage, MaxRetriesExceeded, OperatorError
from ..core.logger import get_logger
from ..core.types import (
    AckResult,
    Acknowledgment,
    BtMeshEvent,
    CloudEvent,
    CommandKind,
)
from .backoff import ExponentialBackoff
from .device_table import DeviceTable
from .state_machine import on_failure, on_success
from .status_writer import StatusUpdate, StatusWriter

logger = get_logger("AckCorrelator")

SUBJECT_DEVICES = "devices"
SUBJECT_BTMESH = "btmesh"

def _event_data(envelope: CloudEvent):
    data = envelope.data
    if data is None and envelope.data_base64:
        try:
            data = base64.b64decode(envelope.data_base64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedMessage(f"Invalid data_base64: {e}")
    if isinstance(data, (bytes, str)):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedMessage(f"Event data is not JSON: {e}")
    return data

def parse_message(payload: bytes) -> Tuple[Optional[str], Optional[BtMeshEvent]]:
    """
    Returns (subject, event). Event is only set for the btmesh subject.
    Raises MalformedMessage.
    """
    try:
        envelope = CloudEvent.model_validate_json(payload)
    except ValidationError as e:
        raise MalformedMessage(f"Not a CloudEvent: {e.errors()[0]['msg'] if e.errors() else e}")

    if envelope.subject != SUBJECT_BTMESH:
        return envelope.subject, None

    data = _event_data(envelope)
    try:
        return envelope.subject, BtMeshEvent.model_validate(data)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid btmesh event: {e}")

def to_acknowledgment(event: BtMeshEvent) -> Optional[Acknowledgment]:
    """
    Maps a gateway report onto a command result.
    Returns None for progress reports and uncorrelated events.
    """
    token = event.correlation_id
    if not token:
        return None
    status = event.status
    if status.provisioned is not None:
        return Acknowledgment(token=token, result=AckResult.SUCCESS, kind=CommandKind.PROVISION,
                              address=status.provisioned.address)
    if status.reset is not None:
        if status.reset.error:
            return Acknowledgment(token=token, result=AckResult.FAILURE, kind=CommandKind.UNPROVISION,
                                  reason=status.reset.error)
        return Acknowledgment(token=token, result=AckResult.SUCCESS, kind=CommandKind.UNPROVISION)
    if status.provisioning.error:
        return Acknowledgment(token=token, result=AckResult.FAILURE, kind=CommandKind.PROVISION,
                              reason=status.provisioning.error)
    return None

class AckCorrelator:
    """
    Matches gateway acknowledgments to in-flight commands by token.
    Anything that does not match a live command is dropped without
    touching device state.
    """
    def __init__(
        self,
        table: DeviceTable,
        writer: StatusWriter,
        backoff: ExponentialBackoff,
        max_retries: int,
        clock: Callable[[], float] = Clock.monotonic,
        on_devices_changed: Optional[Callable[[], None]] = None,
    ):
        self.table = table
        self.writer = writer
        self.backoff = backoff
        self.max_retries = max_retries
        self.clock = clock
        self.on_devices_changed = on_devices_changed

    async def on_message(self, payload: bytes):
        try:
            subject, event = parse_message(payload)
        except MalformedMessage as e:
            logger.warning("malformed_message_discarded", error=str(e))
            return

        if subject == SUBJECT_DEVICES:
            logger.debug("devices_changed_event")
            if self.on_devices_changed is not None:
                self.on_devices_changed()
            return
        if event is None:
            logger.debug("event_ignored", subject=subject)
            return

        ack = to_acknowledgment(event)
        if ack is None:
            logger.debug("gateway_progress_event", correlation_id=event.correlation_id)
            return

        update = await self.correlate(ack)
        if update is not None:
            await self._persist(update)

    async def correlate(self, ack: Acknowledgment) -> Optional[StatusUpdate]:
        """
        Applies a matched acknowledgment to its device.
        Returns the status to write back, or None if the ack was discarded.
        """
        async with self.table.lock:
            command = self.table.lookup(ack.token)
            if command is None:
                logger.debug("ack_discarded", token=ack.token, result=ack.result.value)
                return None
            if ack.kind is not None and ack.kind is not command.kind:
                # Leaves the command in flight for its real ack or its deadline.
                logger.warning("ack_kind_mismatch",
                               device=command.device_id,
                               token=ack.token,
                               expected=command.kind.value,
                               reported=ack.kind.value)
                return None
            self.table.pop(ack.token)

            device = self.table.get(command.device_id)
            if device is None:
                return None

            now_iso = Clock.wall_time_iso()
            if ack.result is AckResult.SUCCESS:
                device.apply_outcome(on_success(command.kind), now_iso)
                device.record_error(None)
                device.next_attempt_at = 0.0
                if command.kind is CommandKind.PROVISION and ack.address is not None:
                    device.address = ack.address
                elif command.kind is CommandKind.UNPROVISION:
                    device.address = None
                logger.info("command_acknowledged",
                            device=device.device_id,
                            kind=command.kind.value,
                            token=ack.token,
                            state=device.observed_state.value)
            else:
                outcome = on_failure(device.observed_state, device.retry_count, device.failure_count, self.max_retries)
                device.apply_outcome(outcome, now_iso)
                device.record_error(ack.reason or "Command failed")
                if outcome.failed:
                    logger.error("device_failed",
                                 device=device.device_id,
                                 error=str(MaxRetriesExceeded(device.device_id, device.failure_count, device.last_error)))
                else:
                    device.next_attempt_at = self.backoff.next_attempt(self.clock(), device.failure_count)
                    logger.warning("command_rejected",
                                   device=device.device_id,
                                   kind=command.kind.value,
                                   token=ack.token,
                                   reason=ack.reason,
                                   retry_count=device.retry_count)

            return StatusUpdate.from_device(device, self.table.next_version())

    async def _persist(self, update: StatusUpdate):
        try:
            await self.writer.write(update)
        except OperatorError as e:
            # The next tick compares against a fresh snapshot and writes again.
            logger.warning("status_write_failed", device=update.device_id, error=str(e))
