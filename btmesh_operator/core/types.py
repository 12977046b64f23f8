from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

# Registry conventions
FINALIZER = "btmesh-operator"
SECTION = "btmesh"
ANNOTATION_DESIRED_STATE = "btmesh.drogue.io/desired-state"
ANNOTATION_RESET = "btmesh.drogue.io/reset"
LABEL_ROLE = "role"
ROLE_GATEWAY = "gateway"

class DesiredState(str, Enum):
    PROVISIONED = "provisioned"
    UNPROVISIONED = "unprovisioned"

class ObservedState(str, Enum):
    UNKNOWN = "unknown"
    PENDING = "pending"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    UNPROVISIONING = "unprovisioning"
    UNPROVISIONED = "unprovisioned"
    FAILED = "failed"

class CommandKind(str, Enum):
    PROVISION = "provision"
    UNPROVISION = "unprovision"

class AckResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"

# --- Registry documents ---

class DeviceMetadata(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    application: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    deletion_timestamp: Optional[str] = Field(default=None, alias="deletionTimestamp")
    resource_version: Optional[str] = Field(default=None, alias="resourceVersion")

class RegistryDevice(BaseModel):
    """
    A device entry as the registry returns it.
    Unknown fields are preserved so a PUT does not drop them.
    """
    model_config = ConfigDict(extra="allow")

    metadata: DeviceMetadata
    spec: Dict[str, Any] = Field(default_factory=dict)
    status: Dict[str, Any] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.name

    def aliases(self) -> List[str]:
        value = self.spec.get("alias")
        if not isinstance(value, list):
            return []
        return [a for a in value if isinstance(a, str)]

    def ensure_alias(self, alias: str) -> bool:
        """
        Adds alias to spec.alias. Returns True if the document changed.
        """
        aliases = self.aliases()
        if alias in aliases:
            return False
        aliases.append(alias)
        self.spec["alias"] = aliases
        return True

    def ensure_finalizer(self, finalizer: str = FINALIZER) -> bool:
        if finalizer in self.metadata.finalizers:
            return False
        self.metadata.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str = FINALIZER) -> bool:
        if finalizer not in self.metadata.finalizers:
            return False
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != finalizer]
        return True

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

class Condition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    status: str  # "True" / "False"
    reason: Optional[str] = None
    message: Optional[str] = None
    last_transition_time: Optional[str] = Field(default=None, alias="lastTransitionTime")

class BtMeshStatus(BaseModel):
    """
    The status.btmesh section. This is the only part of the registry
    document the reconciler owns.
    """
    model_config = ConfigDict(populate_by_name=True)

    state: ObservedState = ObservedState.UNKNOWN
    retry_count: int = Field(default=0, alias="retryCount", ge=0)
    failure_count: int = Field(default=0, alias="failureCount", ge=0)
    last_error: Optional[str] = Field(default=None, alias="lastError")
    last_transition_time: Optional[str] = Field(default=None, alias="lastTransitionTime")
    last_command_id: Optional[str] = Field(default=None, alias="lastCommandId")
    address: Optional[int] = None
    failed_for: Optional[DesiredState] = Field(default=None, alias="failedFor")
    reset_token: Optional[str] = Field(default=None, alias="resetToken")
    conditions: List[Condition] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

# --- Gateway wire format ---

class ProvisionOperation(BaseModel):
    device: str

class ResetOperation(BaseModel):
    device: str
    address: Optional[int] = None

class BtMeshOperation(BaseModel):
    provision: Optional[ProvisionOperation] = None
    reset: Optional[ResetOperation] = None

class BtMeshCommand(BaseModel):
    """
    Outbound command. Serialized as
    {"command": {"provision": {...}}, "correlationId": "..."}.
    """
    model_config = ConfigDict(populate_by_name=True)

    command: BtMeshOperation
    correlation_id: str = Field(alias="correlationId")

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode()

class ProvisionedStatus(BaseModel):
    device: str
    address: int

class ProvisioningStatus(BaseModel):
    device: str
    error: Optional[str] = None

class ResetStatus(BaseModel):
    device: str
    error: Optional[str] = None

class BtMeshDeviceState(BaseModel):
    provisioned: Optional[ProvisionedStatus] = None
    provisioning: Optional[ProvisioningStatus] = None
    reset: Optional[ResetStatus] = None

    @model_validator(mode="after")
    def _exactly_one(self):
        present = [v for v in (self.provisioned, self.provisioning, self.reset) if v is not None]
        if len(present) != 1:
            raise ValueError("status must carry exactly one of provisioned, provisioning, reset")
        return self

class BtMeshEvent(BaseModel):
    """
    Inbound gateway report, carried as CloudEvent data on the btmesh subject.
    """
    model_config = ConfigDict(populate_by_name=True)

    correlation_id: Optional[str] = Field(default=None, alias="correlationId")
    status: BtMeshDeviceState

class CloudEvent(BaseModel):
    """
    Structured-mode CloudEvent as delivered by the MQTT integration.
    """
    model_config = ConfigDict(extra="allow")

    specversion: Optional[str] = None
    id: Optional[str] = None
    source: Optional[str] = None
    type: Optional[str] = None
    subject: Optional[str] = None
    datacontenttype: Optional[str] = None
    data: Optional[Any] = None
    data_base64: Optional[str] = None

# --- Reconciler types ---

class Command(BaseModel):
    """
    A dispatched command awaiting acknowledgment.
    Owned by the in-flight map until acknowledged or timed out.
    """
    model_config = ConfigDict(frozen=True)

    token: str
    device_id: str
    kind: CommandKind
    issued_at: float  # monotonic seconds
    deadline: float   # monotonic seconds

    def expired(self, now: float) -> bool:
        return now >= self.deadline

class Acknowledgment(BaseModel):
    """
    Result of a command, as reported by the gateway.
    """
    model_config = ConfigDict(frozen=True)

    token: str
    result: AckResult
    kind: Optional[CommandKind] = None
    reason: Optional[str] = None
    address: Optional[int] = None
