"""
MQTT client capability backed by paho-mqtt.

paho runs its network loop in a background thread; results the asyncio side
waits for (CONNACK, SUBACK, publish written) are handed over with
``loop.call_soon_threadsafe``.
"""
import asyncio
import logging
import os
import ssl
import tempfile
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from .interfaces import EVENT_NAMES
from ..utils.exceptions import (
    MQTTConnectionError,
    MQTTPublishError,
    MQTTSubscribeError,
    MQTTValidationError,
)

logger = logging.getLogger(__name__)

KEEPALIVE = 60
QOS = 0
OPERATION_TIMEOUT = 30


@dataclass(frozen=True)
class PacketProperties:
    reason_string: Optional[str] = None


@dataclass(frozen=True)
class DisconnectPacket:
    """Payload of the 'disconnect' event."""
    reason_code: Any = None
    properties: PacketProperties = field(default_factory=PacketProperties)


def parse_broker_uri(uri: str, default_port: int) -> Tuple[str, int]:
    """Split ``mqtts://host[:port]`` into host and port."""
    parsed = urlparse(uri)
    if parsed.scheme != 'mqtts':
        raise MQTTValidationError(f"Unsupported broker URI scheme: {uri}")
    if not parsed.hostname:
        raise MQTTValidationError(f"Broker URI must include a hostname: {uri}")
    try:
        port = parsed.port or default_port
    except ValueError as e:
        raise MQTTValidationError(f"Invalid broker URI: {str(e)}")
    return parsed.hostname, port


def build_ssl_context(config) -> ssl.SSLContext:
    """TLS client context with the device credentials and ALPN from the config."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.verify_mode = ssl.CERT_REQUIRED
    try:
        context.load_verify_locations(cadata=config.ca.decode('ascii'))
    except UnicodeDecodeError:
        # DER encoded CA
        context.load_verify_locations(cadata=config.ca)

    # load_cert_chain only reads from files
    with tempfile.TemporaryDirectory(prefix='aws-iot-tester-') as tmp_dir:
        cert_file = Path(tmp_dir) / 'certificate.pem.crt'
        key_file = Path(tmp_dir) / 'private.pem.key'
        cert_file.write_bytes(config.cert)
        key_file.write_bytes(config.key)
        os.chmod(key_file, 0o600)
        context.load_cert_chain(certfile=str(cert_file), keyfile=str(key_file))

    context.set_alpn_protocols(list(config.alpn_protocols))
    return context


def create_paho_client(config) -> mqtt.Client:
    protocol = mqtt.MQTTv5 if config.protocol_version == 5 else mqtt.MQTTv311
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=config.client_id,
        protocol=protocol,
    )


def _reason_string(properties: Any) -> Optional[str]:
    return getattr(properties, 'ReasonString', None) if properties is not None else None


def _is_failure(reason_code: Any) -> bool:
    return bool(getattr(reason_code, 'is_failure', False))


class PahoConnection:
    """A single paho-mqtt connection exposing the MQTTConnection contract."""

    def __init__(self, config, client_factory: Callable = create_paho_client,
                 ssl_context_factory: Callable = build_ssl_context):
        self.config = config
        self._client = client_factory(config)
        self._client.tls_set_context(ssl_context_factory(config))

        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()
        self._pending: Dict[Tuple[str, int], asyncio.Future] = {}
        self._early: Dict[Tuple[str, int], Any] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connect_future: Optional[asyncio.Future] = None
        self._connected = False
        self._ending = False
        self._ended = False

        self._client.on_connect = self._on_connect
        self._client.on_connect_fail = self._on_connect_fail
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.on_subscribe = self._on_subscribe
        self._client.on_publish = self._on_publish
        self._client.on_log = self._on_log

    @property
    def connected(self) -> bool:
        return self._connected and not self._ended

    def on(self, event: str, handler: Callable[..., None]) -> 'PahoConnection':
        """Register a handler for one of the connection events."""
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {event}")
        self._handlers[event].append(handler)
        return self

    def _emit(self, event: str, *args) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Handler for '{event}' failed")

    # Thread hand-over helpers

    def _settle(self, future: Optional[asyncio.Future], result: Any = None,
                error: Optional[BaseException] = None) -> None:
        if future is None or self._loop is None or self._loop.is_closed():
            return

        def settle():
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        self._loop.call_soon_threadsafe(settle)

    def _ack(self, kind: str, mid: int, result: Any = None,
             error: Optional[BaseException] = None) -> None:
        with self._lock:
            future = self._pending.pop((kind, mid), None)
            if future is None:
                self._early[(kind, mid)] = (result, error)
                return
        self._settle(future, result, error)

    def _expect(self, kind: str, mid: int) -> asyncio.Future:
        """Future settled when the ack for ``mid`` arrives. Caller holds the lock."""
        future = self._loop.create_future()
        early = self._early.pop((kind, mid), None)
        if early is None:
            self._pending[(kind, mid)] = future
        elif early[1] is not None:
            future.set_exception(early[1])
        else:
            future.set_result(early[0])
        return future

    def _forget(self, kind: str, mid: int) -> None:
        with self._lock:
            self._pending.pop((kind, mid), None)

    def _stop_loop(self) -> None:
        try:
            self._client.loop_stop()
        except Exception as e:
            logger.debug(f"Error stopping network loop: {str(e)}")

    # Connection lifecycle

    async def open(self, host: str, port: int) -> None:
        """Connect and wait for the CONNACK."""
        self._loop = asyncio.get_running_loop()
        self._connect_future = self._loop.create_future()
        try:
            self._client.connect_async(host, port, keepalive=KEEPALIVE, clean_start=self.config.clean)
            self._client.loop_start()
            await asyncio.wait_for(self._connect_future, timeout=OPERATION_TIMEOUT)
        except asyncio.TimeoutError:
            self._stop_loop()
            raise MQTTConnectionError(f"Timed out connecting to {host}:{port}")
        except MQTTConnectionError:
            self._stop_loop()
            raise
        except Exception as e:
            self._stop_loop()
            raise MQTTConnectionError(f"Failed to connect: {str(e)}") from e

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if _is_failure(reason_code):
            error = MQTTConnectionError(f"Connection refused: {reason_code}")
            self._settle(self._connect_future, error=error)
            self._emit('error', error)
            # paho would otherwise retry
            self._stop_loop()
            return
        self._connected = True
        self._settle(self._connect_future, True)

    def _on_connect_fail(self, client, userdata):
        error = MQTTConnectionError("Connection failed")
        self._settle(self._connect_future, error=error)
        self._emit('error', error)
        self._stop_loop()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        was_connected = self._connected
        self._connected = False
        self._settle(self._connect_future, error=MQTTConnectionError(f"Disconnected: {reason_code}"))

        if not self._ending and _is_failure(reason_code):
            self._emit('error', MQTTConnectionError(f"Disconnected: {reason_code}"))
        if was_connected:
            packet = DisconnectPacket(reason_code, PacketProperties(_reason_string(properties)))
            self._emit('disconnect', packet)
        self._emit('close')

        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            self._settle(future, error=MQTTConnectionError("Connection lost"))

        # No automatic reconnect
        if not self._ending:
            self._stop_loop()

    def _on_message(self, client, userdata, message):
        self._emit('message', message.topic, message.payload)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        failures = [rc for rc in reason_code_list if _is_failure(rc)]
        if failures:
            self._ack('sub', mid, error=MQTTSubscribeError(
                f"Subscription rejected: {', '.join(str(rc) for rc in failures)}"))
        else:
            self._ack('sub', mid, result=list(reason_code_list))

    def _on_publish(self, client, userdata, mid, reason_code=None, properties=None):
        if _is_failure(reason_code):
            self._ack('pub', mid, error=MQTTPublishError(f"Publish rejected: {reason_code}"))
        else:
            self._ack('pub', mid, result=mid)

    def _on_log(self, client, userdata, level, buf):
        if level != mqtt.MQTT_LOG_DEBUG:
            return
        if buf.startswith('Sending '):
            self._emit('packetsend', buf[len('Sending '):])
        elif buf.startswith('Received '):
            self._emit('packetreceive', buf[len('Received '):])

    # Operations

    async def subscribe_async(self, topics: Sequence[str]) -> List[Any]:
        """Subscribe to every topic and wait for the SUBACK."""
        if self._loop is None:
            raise MQTTSubscribeError("Connection was never opened")
        result, mid = self._client.subscribe([(topic, QOS) for topic in topics])
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTSubscribeError(mqtt.error_string(result))
        with self._lock:
            future = self._expect('sub', mid)
        try:
            return await asyncio.wait_for(future, timeout=OPERATION_TIMEOUT)
        except asyncio.TimeoutError:
            self._forget('sub', mid)
            raise MQTTSubscribeError("Timed out waiting for SUBACK")

    async def publish_async(self, topic: str, message: str) -> int:
        """Publish a message and wait until paho has handed it to the socket."""
        if self._loop is None:
            raise MQTTPublishError("Connection was never opened")
        info = self._client.publish(topic, message, qos=QOS)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTPublishError(mqtt.error_string(info.rc))
        with self._lock:
            future = self._expect('pub', info.mid)
        try:
            return await asyncio.wait_for(future, timeout=OPERATION_TIMEOUT)
        except asyncio.TimeoutError:
            self._forget('pub', info.mid)
            raise MQTTPublishError("Timed out waiting for publish")

    def end(self) -> None:
        """Disconnect and stop the network loop. Safe to call more than once."""
        if self._ended:
            return
        self._ending = True
        try:
            self._client.disconnect()
        except Exception as e:
            logger.debug(f"Disconnect error: {str(e)}")
        self._stop_loop()
        self._connected = False
        self._ended = True
        self._emit('end')


class PahoMQTTClient:
    """MQTTClientCapability implementation using paho-mqtt."""

    def __init__(self, client_factory: Callable = create_paho_client,
                 ssl_context_factory: Callable = build_ssl_context):
        self.client_factory = client_factory
        self.ssl_context_factory = ssl_context_factory

    async def connect_async(self, uri: str, config) -> PahoConnection:
        host, port = parse_broker_uri(uri, config.port)
        logger.debug(f"Opening paho connection to {host}:{port}")
        connection = PahoConnection(config, self.client_factory, self.ssl_context_factory)
        await connection.open(host, port)
        return connection
