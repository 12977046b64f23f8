import asyncio
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional
from ..core.types import (
    BtMeshStatus,
    Command,
    Condition,
    DesiredState,
    ObservedState,
)
from .state_machine import Decision, Outcome

@dataclass
class DeviceState:
    """
    In-memory view of one tracked device.
    observed_state changes only through apply_decision() / apply_outcome(),
    which take state machine results.
    """
    device_id: str
    desired_state: DesiredState
    observed_state: ObservedState = ObservedState.UNKNOWN
    uuid: Optional[str] = None
    last_transition_time: Optional[str] = None
    last_command_id: Optional[str] = None
    retry_count: int = 0
    failure_count: int = 0  # timeouts and negative acks only; gates Failed
    last_error: Optional[str] = None
    address: Optional[int] = None
    failed_for: Optional[DesiredState] = None
    reset_token: Optional[str] = None
    deleting: bool = False
    next_attempt_at: float = 0.0  # monotonic seconds, backoff gate

    @classmethod
    def from_status(
        cls,
        device_id: str,
        desired: DesiredState,
        status: BtMeshStatus,
        uuid: Optional[str] = None,
    ) -> "DeviceState":
        return cls(
            device_id=device_id,
            desired_state=desired,
            observed_state=status.state,
            uuid=uuid,
            last_transition_time=status.last_transition_time,
            last_command_id=status.last_command_id,
            retry_count=status.retry_count,
            failure_count=status.failure_count,
            last_error=status.last_error,
            address=status.address,
            failed_for=status.failed_for,
            reset_token=status.reset_token,
        )

    def _set_state(self, state: ObservedState, now_iso: str):
        if state is not self.observed_state:
            self.observed_state = state
            self.last_transition_time = now_iso

    def apply_decision(self, decision: Decision, now_iso: str):
        self._set_state(decision.next_state, now_iso)

    def apply_outcome(self, outcome: Outcome, now_iso: str):
        self.retry_count = outcome.retry_count
        self.failure_count = outcome.failure_count
        if outcome.failed:
            self.failed_for = self.desired_state
        self._set_state(outcome.next_state, now_iso)

    def record_error(self, message: Optional[str]):
        self.last_error = message

    def reset_retries(self):
        """Fresh retry budget: desired state changed or an operator asked for it."""
        self.retry_count = 0
        self.failure_count = 0
        self.failed_for = None
        self.next_attempt_at = 0.0

    def to_status(self) -> BtMeshStatus:
        provisioned = Condition(
            type="Provisioned",
            status="True" if self.observed_state is ObservedState.PROVISIONED else "False",
        )
        provisioning = Condition(
            type="Provisioning",
            status="True" if self.observed_state is ObservedState.PROVISIONING else "False",
        )
        if self.observed_state is ObservedState.FAILED and self.last_error:
            provisioned.reason = "Error provisioning device" if self.failed_for is DesiredState.PROVISIONED \
                else "Error resetting device"
            provisioned.message = self.last_error
        return BtMeshStatus(
            state=self.observed_state,
            retry_count=self.retry_count,
            failure_count=self.failure_count,
            last_error=self.last_error,
            last_transition_time=self.last_transition_time,
            last_command_id=self.last_command_id,
            address=self.address,
            failed_for=self.failed_for,
            reset_token=self.reset_token,
            conditions=[provisioned, provisioning],
        )

class DeviceTable:
    """
    The shared mutable state: tracked devices and in-flight commands.

    Discipline: every read or write goes through `async with table.lock`.
    The reconcile loop and the correlator are the only two holders. The
    in-flight map lives here so that register/expire/pop are atomic with the
    state transitions they accompany.
    """
    def __init__(self):
        self.lock = asyncio.Lock()
        self._devices: Dict[str, DeviceState] = {}
        self._in_flight: Dict[str, Command] = {}  # token -> command
        self._by_device: Dict[str, str] = {}      # device_id -> token
        self._version = 0

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[DeviceState]:
        return iter(list(self._devices.values()))

    def get(self, device_id: str) -> Optional[DeviceState]:
        return self._devices.get(device_id)

    def put(self, device: DeviceState):
        self._devices[device.device_id] = device

    def remove(self, device_id: str) -> Optional[DeviceState]:
        """
        Stops tracking a device. Its in-flight command, if any, is dropped
        so a late acknowledgment is discarded.
        """
        token = self._by_device.pop(device_id, None)
        if token is not None:
            self._in_flight.pop(token, None)
        return self._devices.pop(device_id, None)

    def device_ids(self) -> List[str]:
        return list(self._devices)

    def next_version(self) -> int:
        """
        Orders status captures taken under the lock, so a stale capture
        never overwrites a newer one in the registry.
        """
        self._version += 1
        return self._version

    # --- In-flight commands ---

    def register(self, command: Command) -> bool:
        """
        Records a dispatched command.
        Returns False if the device already has one in flight.
        """
        if command.device_id in self._by_device:
            return False
        self._in_flight[command.token] = command
        self._by_device[command.device_id] = command.token
        return True

    def in_flight_for(self, device_id: str) -> Optional[Command]:
        token = self._by_device.get(device_id)
        return self._in_flight.get(token) if token is not None else None

    def lookup(self, token: str) -> Optional[Command]:
        return self._in_flight.get(token)

    def pop(self, token: str) -> Optional[Command]:
        command = self._in_flight.pop(token, None)
        if command is not None:
            self._by_device.pop(command.device_id, None)
        return command

    def expired(self, now: float) -> List[Command]:
        return [c for c in self._in_flight.values() if c.expired(now)]

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)
