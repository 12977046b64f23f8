"""
Per-device provisioning state machine.

Pure functions only: given the desired and observed state (and the retry
bookkeeping that goes with them) they return what to do next. The table in
plan() is closed, every (desired, observed) pair has exactly one decision.
Nothing here touches the device table, the registry or the channel.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from ..core.types import CommandKind, DesiredState, ObservedState

class Action(str, Enum):
    NONE = "none"
    AWAIT = "await"
    PROVISION = "provision"
    UNPROVISION = "unprovision"

    @property
    def command_kind(self) -> Optional[CommandKind]:
        if self is Action.PROVISION:
            return CommandKind.PROVISION
        if self is Action.UNPROVISION:
            return CommandKind.UNPROVISION
        return None

@dataclass(frozen=True)
class Decision:
    action: Action
    next_state: ObservedState

@dataclass(frozen=True)
class Outcome:
    """
    Result of applying an event (ack, timeout, dispatch error) to a device.
    """
    next_state: ObservedState
    retry_count: int
    failure_count: int
    failed: bool = False

# Where each command kind leaves the device while it is in flight,
# and where a successful acknowledgment takes it.
IN_PROGRESS = {
    CommandKind.PROVISION: ObservedState.PROVISIONING,
    CommandKind.UNPROVISION: ObservedState.UNPROVISIONING,
}
CONVERGED = {
    CommandKind.PROVISION: ObservedState.PROVISIONED,
    CommandKind.UNPROVISION: ObservedState.UNPROVISIONED,
}
COMMAND_FOR = {
    DesiredState.PROVISIONED: CommandKind.PROVISION,
    DesiredState.UNPROVISIONED: CommandKind.UNPROVISION,
}

def plan(
    desired: DesiredState,
    observed: ObservedState,
    failed_for: Optional[DesiredState] = None,
) -> Decision:
    """
    Decide the next action for a device.

    A Failed device stays Failed while the desired state is the one that
    failed; a different desired state is pursued normally.
    """
    if observed is ObservedState.FAILED and failed_for == desired:
        return Decision(Action.NONE, ObservedState.FAILED)

    kind = COMMAND_FOR[desired]
    target = CONVERGED[kind]
    in_progress = IN_PROGRESS[kind]

    if observed is target:
        return Decision(Action.NONE, target)
    if observed is in_progress:
        return Decision(Action.AWAIT, in_progress)
    if kind is CommandKind.PROVISION:
        return Decision(Action.PROVISION, in_progress)
    return Decision(Action.UNPROVISION, in_progress)

def is_converged(desired: DesiredState, observed: ObservedState) -> bool:
    return CONVERGED[COMMAND_FOR[desired]] is observed

def on_success(kind: CommandKind) -> Outcome:
    return Outcome(next_state=CONVERGED[kind], retry_count=0, failure_count=0)

def on_failure(observed: ObservedState, retry_count: int, failure_count: int, max_retries: int) -> Outcome:
    """
    A command failed (negative ack or timeout). Only these spend the
    failure budget; once it is gone the device is Failed.
    """
    failures = failure_count + 1
    if failures >= max_retries:
        return Outcome(next_state=ObservedState.FAILED, retry_count=retry_count + 1,
                       failure_count=failures, failed=True)
    return Outcome(next_state=observed, retry_count=retry_count + 1, failure_count=failures)

# Timeouts and negative acknowledgments spend the same budget.
on_timeout = on_failure

def on_dispatch_error(observed: ObservedState, retry_count: int, failure_count: int) -> Outcome:
    """
    The command never left. State stays where it was and the failure
    budget is untouched; the next tick tries again.
    """
    return Outcome(next_state=observed, retry_count=retry_count + 1, failure_count=failure_count)

def on_reset(observed: ObservedState) -> Outcome:
    """
    Operator-requested reset: fresh retry budget, and a Failed device
    goes back to Pending so the next tick acts on it.
    """
    if observed is ObservedState.FAILED:
        return Outcome(next_state=ObservedState.PENDING, retry_count=0, failure_count=0)
    return Outcome(next_state=observed, retry_count=0, failure_count=0)
