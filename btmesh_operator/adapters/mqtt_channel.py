import asyncio
import ssl
import uuid
from typing import AsyncGenerator, Optional
import paho.mqtt.client as mqtt
from ..core.config import MqttEndpoint
from ..core.errors import AuthenticationError, TransportUnavailable
from ..core.logger import get_logger
from .interfaces import ChannelInterface

logger = get_logger("MqttChannel")

# CONNACK reason codes that mean "wrong credentials" (MQTT 3.1.1 and 5).
_AUTH_FAILURES = {4, 5, 134, 135}

class MqttChannel(ChannelInterface):
    """
    Gateway channel over the MQTT integration (paho-mqtt).

    paho runs its own network thread; inbound payloads are handed to the
    asyncio loop with call_soon_threadsafe and consumed through listen().
    """
    def __init__(
        self,
        endpoint: MqttEndpoint,
        application: str,
        token: str,
        user: Optional[str] = None,
        group_id: Optional[str] = None,
        insecure: bool = False,
        connect_timeout: float = 10.0,
        queue_size: int = 1000,
    ):
        self.endpoint = endpoint
        self.application = application
        self.group_id = group_id
        self.connect_timeout = connect_timeout
        self._connected = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=queue_size)
        self._connect_result: Optional[asyncio.Future] = None

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"btmesh-operator-{uuid.uuid4().hex[:8]}",
            protocol=mqtt.MQTTv5,
        )
        self._client.username_pw_set(user or application, token)
        if endpoint.tls:
            if insecure:
                self._client.tls_set(cert_reqs=ssl.CERT_NONE)
                self._client.tls_insecure_set(True)
            else:
                self._client.tls_set()
        self._client.reconnect_delay_set(min_delay=1, max_delay=30)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    @property
    def subscription(self) -> str:
        if self.group_id:
            return f"$shared/{self.group_id}/app/{self.application}"
        return f"app/{self.application}"

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        self._loop = asyncio.get_running_loop()
        self._connect_result = self._loop.create_future()
        logger.info("connecting_to_mqtt", host=self.endpoint.host, port=self.endpoint.port, topic=self.subscription)

        try:
            self._client.connect_async(self.endpoint.host, self.endpoint.port, keepalive=30)
        except (OSError, ValueError) as e:
            raise TransportUnavailable(f"MQTT connect failed: {e}") from e
        self._client.loop_start()

        try:
            await asyncio.wait_for(self._connect_result, timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            self._client.loop_stop()
            raise TransportUnavailable(f"MQTT connect to {self.endpoint.host} timed out")

    # --- paho callbacks, called on the paho network thread ---

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            error: Exception
            if reason_code.value in _AUTH_FAILURES:
                error = AuthenticationError(f"MQTT connection refused: {reason_code}")
            else:
                error = TransportUnavailable(f"MQTT connection refused: {reason_code}")
            self._resolve_connect(error)
            return

        client.subscribe(self.subscription, qos=1)
        self._connected = True
        logger.info("mqtt_connected", topic=self.subscription)
        self._resolve_connect(None)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self._connected = False
        logger.warning("mqtt_disconnected", reason=str(reason_code))

    def _on_message(self, client, userdata, message):
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._enqueue, message.payload)

    # --- back on the event loop ---

    def _resolve_connect(self, error: Optional[Exception]):
        if self._loop is None:
            return

        def resolve():
            future = self._connect_result
            if future is None or future.done():
                return
            if error is None:
                future.set_result(True)
            else:
                future.set_exception(error)

        self._loop.call_soon_threadsafe(resolve)

    def _enqueue(self, payload: bytes):
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("inbound_message_dropped", reason="queue_full")

    async def publish(self, topic: str, payload: bytes) -> None:
        if not self._connected:
            raise TransportUnavailable("MQTT channel not connected")
        info = self._client.publish(topic, payload, qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportUnavailable(f"MQTT publish failed: {mqtt.error_string(info.rc)}")

    async def listen(self) -> AsyncGenerator[bytes, None]:
        while True:
            yield await self._queue.get()

    async def close(self):
        self._connected = False
        self._client.disconnect()
        self._client.loop_stop()
        logger.info("mqtt_closed")
