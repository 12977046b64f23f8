import asyncio
import json
from typing import Any, List, Optional, Tuple
from urllib.parse import quote
import aiohttp
from pydantic import ValidationError
from ..core.errors import AuthenticationError, OperatorError, RegistryWriteConflict, TransportUnavailable
from ..core.logger import get_logger
from ..core.types import RegistryDevice
from .interfaces import RegistryInterface

logger = get_logger("DrogueRegistry")

class DrogueRegistryClient(RegistryInterface):
    """
    Device registry over the Drogue Cloud REST API (aiohttp).
    Every request is bounded by the configured timeout.
    """
    API_PATH = "/api/registry/v1alpha1/apps/{application}/devices"

    def __init__(
        self,
        url: str,
        application: str,
        token: str,
        user: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.url = url.rstrip("/")
        self.application = application
        self.token = token
        self.user = user
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    def _devices_url(self, name: Optional[str] = None) -> str:
        base = self.url + self.API_PATH.format(application=quote(self.application, safe=""))
        return base if name is None else f"{base}/{quote(name, safe='')}"

    def _session_for_request(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Accept": "application/json"}
            auth = None
            if self.user:
                auth = aiohttp.BasicAuth(self.user, self.token)
            else:
                headers["Authorization"] = f"Bearer {self.token}"
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers, auth=auth)
        return self._session

    async def _request(self, method: str, url: str, body: Optional[Any] = None) -> Tuple[int, Any]:
        session = self._session_for_request()
        try:
            async with session.request(method, url, json=body) as resp:
                raw = await resp.read()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportUnavailable(f"Registry {method} {url} failed: {e!r}") from e

        if status in (401, 403):
            raise AuthenticationError(f"Registry rejected credentials ({status})")
        if status == 409:
            raise RegistryWriteConflict(url.rsplit("/", 1)[-1])
        if status >= 500:
            raise TransportUnavailable(f"Registry returned {status}")
        if status == 404:
            return status, None
        if status >= 400:
            raise OperatorError(f"Registry {method} {url} returned {status}: {raw[:200]!r}")

        if not raw:
            return status, None
        try:
            return status, json.loads(raw)
        except json.JSONDecodeError as e:
            raise TransportUnavailable(f"Registry returned invalid JSON: {e}") from e

    async def list_devices(self) -> List[RegistryDevice]:
        status, body = await self._request("GET", self._devices_url())
        if status == 404 or body is None:
            return []
        if not isinstance(body, list):
            raise TransportUnavailable("Unexpected device list payload")

        devices = []
        for entry in body:
            try:
                devices.append(RegistryDevice.model_validate(entry))
            except ValidationError as e:
                logger.warning("invalid_device_entry", error=str(e))
        return devices

    async def get_device(self, name: str) -> Optional[RegistryDevice]:
        status, body = await self._request("GET", self._devices_url(name))
        if status == 404 or body is None:
            return None
        try:
            return RegistryDevice.model_validate(body)
        except ValidationError as e:
            raise TransportUnavailable(f"Invalid device document for {name}: {e}") from e

    async def update_device(self, device: RegistryDevice) -> None:
        status, _ = await self._request("PUT", self._devices_url(device.name), body=device.to_wire())
        if status == 404:
            logger.info("device_update_skipped_not_found", device=device.name)

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
