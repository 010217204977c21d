"""
AWS IoT test client.

``AWSClient`` owns the TLS credentials and connection settings for one device
and exposes guarded connect/subscribe/publish operations on top of an injected
MQTT client capability. Every protocol event of a live connection is turned
into a timestamped log line.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple

import click

from .interfaces import MQTTClientCapability, MQTTConnection
from ..utils.cert_utils import generate_certificate_id
from ..utils.exceptions import CredentialLoadError
from ..utils.logger import log

logger = logging.getLogger(__name__)

PORT = 443
ALPN_PROTOCOL = 'x-amzn-mqtt-ca'
MQTT_VERSION = 5
PROTOCOL = 'mqtts'
LOG_PACKETS = True  # Set to False to silence packetsend/packetreceive


@dataclass(frozen=True)
class ConnectionConfig:
    """Settings passed unchanged to every connect call."""
    client_id: str
    key: bytes
    cert: bytes
    ca: bytes
    port: int = PORT
    alpn_protocols: Tuple[str, ...] = (ALPN_PROTOCOL,)
    protocol_version: int = MQTT_VERSION
    protocol: str = PROTOCOL
    clean: bool = True
    reconnect_period: int = 0  # Disable automatic reconnect


def error_message(error: Any) -> str:
    """Best effort human readable text of an error."""
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    message = getattr(error, 'message', None)
    return str(message if message is not None else error)


def _field(source: Any, *names: str) -> Any:
    for name in names:
        if isinstance(source, dict):
            if source.get(name) is not None:
                return source[name]
        elif getattr(source, name, None) is not None:
            return getattr(source, name)
    return None


def reason_string(packet: Any) -> Optional[str]:
    """Return the reason string carried by a disconnect packet, if any."""
    if packet is None:
        return None
    properties = _field(packet, 'properties')
    if properties is None:
        return None
    return _field(properties, 'reason_string', 'reasonString', 'ReasonString')


# Event handlers

def on_message_handler(topic: str, message: Any, *args) -> None:
    if isinstance(message, (bytes, bytearray)):
        message = bytes(message).decode('utf-8', errors='replace')
    log(f" <--   Received on topic {topic}: {message}")


def on_error_handler(error: Any, *args) -> None:
    log('Client error:', error_message(error))


def on_close_handler(*args) -> None:
    log('Connection closed.')


def on_disconnect_handler(packet: Any = None, *args) -> None:
    log('Client disconnected.')
    reason = reason_string(packet)
    if reason:
        log('Reason:', reason)


def on_end_handler(*args) -> None:
    log('Client ended.')


def packet_handler(enabled: bool = True) -> Callable[..., None]:
    """Build the handler used for both packetsend and packetreceive."""
    def on_packet_handler(packet: Any, *args) -> None:
        if enabled:
            log('Packet received:', packet)
    return on_packet_handler


class AWSClient:
    """Client used for testing connections to AWS IoT Core."""

    def __init__(self, mqtt_client: MQTTClientCapability, cert_path: str, key_path: str,
                 ca_path: str, client_id: str, subscription_topics: Sequence[str],
                 log_packets: bool = LOG_PACKETS,
                 fingerprint_runner: Optional[Callable[[str], str]] = None):
        """
        Args:
            mqtt_client: The injected MQTT client capability
            cert_path: Path to the device certificate
            key_path: Path to the device private key
            ca_path: Path to the AWS IoT root CA
            client_id: The client id, normally the registered thing name
            subscription_topics: The topics to subscribe to
            log_packets: Log every packet sent and received
            fingerprint_runner: Returns fingerprint command output for a certificate path

        Raises:
            CredentialLoadError: A credential file cannot be read
            FingerprintError: The certificate id cannot be computed
        """
        log('Initializing new AWS IoT client instance')
        self.mqtt_client = mqtt_client
        self.cert_path = str(cert_path)
        self.key_path = str(key_path)
        self.ca_path = str(ca_path)
        self.client_id = client_id
        self.subscription_topics: List[str] = list(subscription_topics)
        self.log_packets = log_packets
        self.client: Optional[MQTTConnection] = None

        self.mqtt_options = ConnectionConfig(
            client_id=self.client_id,
            key=self._read_credential(self.key_path),
            cert=self._read_credential(self.cert_path),
            ca=self._read_credential(self.ca_path),
        )
        self._certificate_id = generate_certificate_id(self.cert_path, fingerprint_runner)

        click.echo(self.describe())
        log('Initialized new AWS IoT client instance')

    @staticmethod
    def _read_credential(path: str) -> bytes:
        try:
            return Path(path).read_bytes()
        except OSError as e:
            raise CredentialLoadError(path, e.strerror or str(e)) from e

    @property
    def certificate_id(self) -> str:
        """Lowercase SHA-256 fingerprint of the device certificate."""
        return self._certificate_id

    @property
    def is_connected(self) -> bool:
        return bool(self.client is not None and self.client.connected)

    def describe(self) -> str:
        """Human readable summary of the client configuration."""
        options = self.mqtt_options
        return (
            "\n"
            "    ==== Client configuration ====\n"
            f"    Certificate id: {self.certificate_id}\n"
            f"    Client id: {self.client_id}\n"
            f"    Certificate path: {self.cert_path}\n"
            f"    Key path: {self.key_path}\n"
            f"    CA path: {self.ca_path}\n"
            f"    MQTT version: {options.protocol_version}\n"
            f"    Protocol: {options.protocol}\n"
            f"    Port: {options.port}\n"
            f"    Clean session: {str(options.clean).lower()}\n"
            f"    Reconnect period: {options.reconnect_period}\n"
        )

    async def connect(self, broker_endpoint: str) -> None:
        """
        Connect to the AWS IoT endpoint.

        Failures are logged and swallowed; no stored connection means the
        attempt failed.
        """
        try:
            uri = f"{self.mqtt_options.protocol}://{broker_endpoint}"
            logger.debug(f"Connecting to {uri} as {self.client_id}")
            client = await self.mqtt_client.connect_async(uri, self.mqtt_options)
            self.client = client
            log('Connected to AWS IoT broker:', broker_endpoint)
            self._register_handlers(client)
        except Exception as err:
            log('Connection error:', error_message(err))

    def _register_handlers(self, client: MQTTConnection) -> None:
        on_packet = packet_handler(self.log_packets)
        client.on('packetreceive', on_packet)
        client.on('packetsend', on_packet)
        client.on('message', on_message_handler)
        client.on('error', on_error_handler)
        client.on('close', on_close_handler)
        client.on('disconnect', on_disconnect_handler)
        client.on('end', on_end_handler)

    async def subscribe(self) -> None:
        """Subscribe to the configured topics."""
        try:
            if not self.is_connected:
                log('Client not connected, skipping subscription attempt')
                return
            log('Subscribing to topics:', self.subscription_topics)
            await self.client.subscribe_async(self.subscription_topics)
            log('Successfully subscribed to:', self.subscription_topics)
        except Exception as err:
            log('Subscription failed:', error_message(err))

    async def publish(self, topic: str, message: str) -> None:
        """
        Publish a message to a topic.

        Args:
            topic: The topic to publish to
            message: The message to send
        """
        try:
            if not self.is_connected:
                log('Client not connected, skipping sending message')
                return
            await self.client.publish_async(topic, message)
            log(f" -->   Message published on topic {topic}. Message: {message}")
        except Exception as err:
            log('Publish failed:', error_message(err))

    def end(self) -> None:
        """End the client connection."""
        try:
            if self.is_connected:
                self.client.end()
        except Exception as err:
            logger.debug(f"Error ending client: {error_message(err)}")
