from abc import ABC, abstractmethod
from typing import AsyncGenerator, List, Optional
from ..core.types import RegistryDevice

class RegistryInterface(ABC):
    """
    Abstract device registry.
    The registry is the source of truth for device existence and intent.
    """

    @abstractmethod
    async def list_devices(self) -> List[RegistryDevice]:
        """
        Returns every device of the application.
        Raises TransportUnavailable if the registry cannot be reached.
        """
        pass

    @abstractmethod
    async def get_device(self, name: str) -> Optional[RegistryDevice]:
        """
        Returns one device, or None if it no longer exists.
        """
        pass

    @abstractmethod
    async def update_device(self, device: RegistryDevice) -> None:
        """
        Writes the device back. Must be safe to repeat.
        Raises RegistryWriteConflict if the stored version moved on.
        """
        pass

    async def close(self):
        pass

class ChannelInterface(ABC):
    """
    Abstract message channel to the mesh gateways.
    """

    @abstractmethod
    async def connect(self):
        """
        Establish the session and subscribe to the acknowledgment topic.
        Raises AuthenticationError / TransportUnavailable on failure.
        """
        pass

    @abstractmethod
    async def publish(self, topic: str, payload: bytes) -> None:
        """
        Publishes with at-least-once delivery.
        Raises TransportUnavailable if the message cannot be accepted.
        """
        pass

    @abstractmethod
    async def listen(self) -> AsyncGenerator[bytes, None]:
        """
        Yields inbound message payloads indefinitely.
        """
        pass

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass

    @abstractmethod
    async def close(self):
        """
        Graceful shutdown.
        """
        pass
