from dataclasses import dataclass, field
from typing import Dict, List, Optional
from pydantic import ValidationError
from ..adapters.interfaces import RegistryInterface
from ..core.logger import get_logger
from ..core.types import (
    ANNOTATION_DESIRED_STATE,
    ANNOTATION_RESET,
    LABEL_ROLE,
    ROLE_GATEWAY,
    SECTION,
    BtMeshStatus,
    DesiredState,
    RegistryDevice,
)

logger = get_logger("SnapshotReader")

@dataclass(frozen=True)
class DeviceRecord:
    """
    One tracked device as the registry describes it right now.
    """
    device_id: str
    desired: DesiredState
    status: BtMeshStatus
    uuid: Optional[str] = None
    reset_request: Optional[str] = None
    deleting: bool = False

@dataclass
class Snapshot:
    devices: Dict[str, DeviceRecord] = field(default_factory=dict)
    gateways: List[str] = field(default_factory=list)
    documents: Dict[str, RegistryDevice] = field(default_factory=dict)

def mesh_uuid(device: RegistryDevice) -> Optional[str]:
    section = device.spec.get(SECTION)
    if not isinstance(section, dict):
        return None
    uuid = section.get("device")
    return uuid.lower() if isinstance(uuid, str) and uuid else None

def resolve_desired(device: RegistryDevice) -> Optional[DesiredState]:
    """
    Deletion wins, then the explicit annotation, then the presence of a btmesh spec.
    Returns None for devices the operator does not manage.
    """
    annotation = device.metadata.annotations.get(ANNOTATION_DESIRED_STATE)
    has_spec = isinstance(device.spec.get(SECTION), dict)

    if device.metadata.deletion_timestamp is not None and (has_spec or annotation):
        return DesiredState.UNPROVISIONED
    if annotation:
        try:
            return DesiredState(annotation.strip().lower())
        except ValueError:
            logger.warning("invalid_desired_state_annotation", device=device.name, value=annotation)
    if has_spec:
        return DesiredState.PROVISIONED
    return None

def read_status(device: RegistryDevice) -> BtMeshStatus:
    """
    Parses status.btmesh. Missing or unreadable status reads as Unknown.
    """
    section = device.status.get(SECTION)
    if section is None:
        return BtMeshStatus()
    try:
        return BtMeshStatus.model_validate(section)
    except ValidationError as e:
        logger.warning("invalid_status_section", device=device.name, error=str(e))
        return BtMeshStatus()

def to_record(device: RegistryDevice) -> Optional[DeviceRecord]:
    desired = resolve_desired(device)
    if desired is None:
        return None
    return DeviceRecord(
        device_id=device.name,
        desired=desired,
        status=read_status(device),
        uuid=mesh_uuid(device),
        reset_request=device.metadata.annotations.get(ANNOTATION_RESET) or None,
        deleting=device.metadata.deletion_timestamp is not None,
    )

def is_gateway(device: RegistryDevice) -> bool:
    return device.metadata.labels.get(LABEL_ROLE) == ROLE_GATEWAY

class SnapshotReader:
    """
    Fetches the full device list and splits it into tracked devices and gateways.
    """
    def __init__(self, registry: RegistryInterface):
        self.registry = registry

    async def fetch(self) -> Snapshot:
        devices = await self.registry.list_devices()
        snapshot = Snapshot()
        for device in devices:
            if is_gateway(device):
                snapshot.gateways.append(device.name)
                continue
            record = to_record(device)
            if record is None:
                continue
            snapshot.devices[record.device_id] = record
            snapshot.documents[record.device_id] = device

        logger.debug("snapshot_loaded",
                     devices=len(snapshot.devices),
                     gateways=snapshot.gateways,
                     total=len(devices))
        return snapshot