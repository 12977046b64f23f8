from dataclasses import dataclass
from typing import Dict, Optional
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from ..adapters.interfaces import RegistryInterface
from ..core.errors import RegistryWriteConflict
from ..core.logger import get_logger
from ..core.types import SECTION, BtMeshStatus, ObservedState, RegistryDevice
from .device_table import DeviceState

logger = get_logger("StatusWriter")

@dataclass(frozen=True)
class StatusUpdate:
    """
    What to write back for one device. Taken under the table lock,
    written outside it.
    """
    device_id: str
    status: BtMeshStatus
    uuid: Optional[str] = None
    deleting: bool = False
    version: int = 0  # capture order; a lower version never overwrites a higher one

    @classmethod
    def from_device(cls, device: DeviceState, version: int = 0) -> "StatusUpdate":
        return cls(
            device_id=device.device_id,
            status=device.to_status(),
            uuid=device.uuid,
            deleting=device.deleting,
            version=version,
        )

    @property
    def release_finalizer(self) -> bool:
        return self.deleting and self.status.state is ObservedState.UNPROVISIONED

def apply_update(document: RegistryDevice, update: StatusUpdate) -> bool:
    """
    Applies the update to a registry document. Returns True if anything changed.
    """
    changed = False
    if update.uuid:
        changed |= document.ensure_alias(update.uuid)
    if update.status.address is not None:
        changed |= document.ensure_alias(f"{update.status.address:04x}")

    if update.release_finalizer:
        changed |= document.remove_finalizer()
    elif not update.deleting:
        changed |= document.ensure_finalizer()

    wire = update.status.to_wire()
    if document.status.get(SECTION) != wire:
        document.status[SECTION] = wire
        changed = True
    return changed

class StatusWriter:
    """
    Writes observed state back to the registry.
    Every write is an idempotent upsert of status.btmesh; conflicts are
    retried against a fresh copy of the device.
    """
    def __init__(self, registry: RegistryInterface, attempts: int = 3):
        self.registry = registry
        self.attempts = attempts
        self._written: Dict[str, int] = {}  # device_id -> last written version

    def is_superseded(self, update: StatusUpdate) -> bool:
        return update.version < self._written.get(update.device_id, -1)

    def forget(self, device_id: str):
        self._written.pop(device_id, None)

    async def write(self, update: StatusUpdate, document: Optional[RegistryDevice] = None) -> bool:
        """
        Returns True if the registry was updated, False if nothing changed
        or the device is gone.
        Raises TransportUnavailable, or RegistryWriteConflict once attempts run out.
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RegistryWriteConflict),
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=0.1, max=1.0),
            reraise=True,
        ):
            with attempt:
                if self.is_superseded(update):
                    logger.debug("status_write_superseded", device=update.device_id, version=update.version)
                    return False

                if document is None or attempt.retry_state.attempt_number > 1:
                    document = await self.registry.get_device(update.device_id)
                    if document is None:
                        logger.info("status_write_skipped_device_gone", device=update.device_id)
                        return False

                if not apply_update(document, update):
                    self._written[update.device_id] = max(update.version, self._written.get(update.device_id, -1))
                    return False

                await self.registry.update_device(document)
                self._written[update.device_id] = update.version
                logger.debug("device_status_updated",
                             device=update.device_id,
                             state=update.status.state.value,
                             retry_count=update.status.retry_count)
        return True
