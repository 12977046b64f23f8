from typing import Optional


class OperatorError(Exception):
    """
    Base class for every error the operator raises on purpose.
    """


class ConfigError(OperatorError):
    """Invalid or missing configuration. Fatal at startup."""


class AuthenticationError(OperatorError):
    """Registry or channel rejected our credentials. Fatal at startup."""


class TransportUnavailable(OperatorError):
    """
    Registry or message channel unreachable.
    Retried on the next tick, never fatal once running.
    """


class RegistryWriteConflict(OperatorError):
    """
    The registry rejected a write because the device changed underneath us.
    Retried with a fresh read.
    """
    def __init__(self, device_id: str, message: str = ""):
        super().__init__(message or f"Write conflict on device {device_id}")
        self.device_id = device_id


class CommandTimeout(OperatorError):
    def __init__(self, device_id: str, token: str):
        super().__init__(f"No acknowledgment for command {token} to device {device_id}")
        self.device_id = device_id
        self.token = token


class MaxRetriesExceeded(OperatorError):
    def __init__(self, device_id: str, retry_count: int, last_error: Optional[str] = None):
        super().__init__(
            f"Device {device_id} exceeded {retry_count} retries"
            + (f": {last_error}" if last_error else "")
        )
        self.device_id = device_id
        self.retry_count = retry_count
        self.last_error = last_error


class MalformedMessage(OperatorError):
    """Inbound gateway message could not be parsed. Logged and discarded."""
