"""Tests for the paho-mqtt backed client capability."""
import asyncio
import os
import ssl
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from aws_iot_tester.client import paho_client as paho_client_module
from aws_iot_tester.client.aws_client import ConnectionConfig
from aws_iot_tester.client.paho_client import (
    KEEPALIVE,
    PahoConnection,
    PahoMQTTClient,
    build_ssl_context,
    parse_broker_uri,
)
from aws_iot_tester.utils.exceptions import (
    MQTTConnectionError,
    MQTTPublishError,
    MQTTSubscribeError,
    MQTTValidationError,
)

SUCCESS = SimpleNamespace(is_failure=False, value=0)
NOT_AUTHORIZED = SimpleNamespace(is_failure=True, value=135)


@pytest.fixture
def config():
    return ConnectionConfig(client_id='clientId', key=b'key', cert=b'cert', ca=b'ca')


@pytest.fixture
def paho():
    """paho Client double that acknowledges the connection on loop_start."""
    client = MagicMock()

    def loop_start():
        client.on_connect(client, None, {}, SUCCESS, None)

    client.loop_start.side_effect = loop_start
    return client


@pytest.fixture
def capability(paho):
    return PahoMQTTClient(client_factory=lambda config: paho,
                          ssl_context_factory=lambda config: 'tls-context')


def record(connection, *events):
    seen = []
    for event in events:
        connection.on(event, lambda *args, event=event: seen.append((event, args)))
    return seen


class TestParseBrokerUri:

    def test_default_port(self):
        assert parse_broker_uri('mqtts://example.com', 443) == ('example.com', 443)

    def test_explicit_port(self):
        assert parse_broker_uri('mqtts://example.com:8883', 443) == ('example.com', 8883)

    @pytest.mark.parametrize('uri', ['mqtt://example.com', 'example.com', 'mqtts://'])
    def test_rejects_invalid(self, uri):
        with pytest.raises(MQTTValidationError):
            parse_broker_uri(uri, 443)


class TestConnect:

    @pytest.mark.asyncio
    async def test_connect_success(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)

        assert connection.connected
        paho.tls_set_context.assert_called_once_with('tls-context')
        paho.connect_async.assert_called_once_with('example.com', 443, keepalive=KEEPALIVE, clean_start=True)
        paho.loop_start.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_refused(self, capability, paho, config):
        paho.loop_start.side_effect = lambda: paho.on_connect(paho, None, {}, NOT_AUTHORIZED, None)

        with pytest.raises(MQTTConnectionError, match='Connection refused'):
            await capability.connect_async('mqtts://example.com', config)
        paho.loop_stop.assert_called()

    @pytest.mark.asyncio
    async def test_connect_fail_callback(self, capability, paho, config):
        paho.loop_start.side_effect = lambda: paho.on_connect_fail(paho, None)

        with pytest.raises(MQTTConnectionError):
            await capability.connect_async('mqtts://example.com', config)
        paho.loop_stop.assert_called()

    @pytest.mark.asyncio
    async def test_connect_socket_error(self, capability, paho, config):
        paho.connect_async.side_effect = OSError('Name or service not known')

        with pytest.raises(MQTTConnectionError, match='Name or service not known'):
            await capability.connect_async('mqtts://example.com', config)


class TestOperations:

    @pytest.mark.asyncio
    async def test_subscribe_ack_after_return(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)

        def subscribe(topics):
            asyncio.get_running_loop().call_soon(connection._on_subscribe, paho, None, 7, [SUCCESS], None)
            return mqtt.MQTT_ERR_SUCCESS, 7

        paho.subscribe.side_effect = subscribe

        assert await connection.subscribe_async(['a', 'b']) == [SUCCESS]
        paho.subscribe.assert_called_once_with([('a', 0), ('b', 0)])

    @pytest.mark.asyncio
    async def test_subscribe_ack_before_return(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)

        def subscribe(topics):
            connection._on_subscribe(paho, None, 8, [SUCCESS], None)
            return mqtt.MQTT_ERR_SUCCESS, 8

        paho.subscribe.side_effect = subscribe

        assert await connection.subscribe_async(['a']) == [SUCCESS]

    @pytest.mark.asyncio
    async def test_subscribe_rejected(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)

        def subscribe(topics):
            connection._on_subscribe(paho, None, 9, [NOT_AUTHORIZED], None)
            return mqtt.MQTT_ERR_SUCCESS, 9

        paho.subscribe.side_effect = subscribe

        with pytest.raises(MQTTSubscribeError, match='Subscription rejected'):
            await connection.subscribe_async(['a'])

    @pytest.mark.asyncio
    async def test_subscribe_not_sent(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)
        paho.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)

        with pytest.raises(MQTTSubscribeError):
            await connection.subscribe_async(['a'])

    @pytest.mark.asyncio
    async def test_publish(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)

        def publish(topic, message, qos):
            asyncio.get_running_loop().call_soon(connection._on_publish, paho, None, 3, SUCCESS, None)
            return SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS, mid=3)

        paho.publish.side_effect = publish

        assert await connection.publish_async('topic', 'message') == 3
        paho.publish.assert_called_once_with('topic', 'message', qos=0)

    @pytest.mark.asyncio
    async def test_publish_not_sent(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)
        paho.publish.return_value = SimpleNamespace(rc=mqtt.MQTT_ERR_NO_CONN, mid=4)

        with pytest.raises(MQTTPublishError):
            await connection.publish_async('topic', 'message')


class TestEvents:

    @pytest.mark.asyncio
    async def test_message_event(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)
        seen = record(connection, 'message')

        paho.on_message(paho, None, SimpleNamespace(topic='a/b', payload=b'hello'))

        assert seen == [('message', ('a/b', b'hello'))]

    @pytest.mark.asyncio
    async def test_packet_events_from_debug_log(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)
        seen = record(connection, 'packetsend', 'packetreceive')

        paho.on_log(paho, None, mqtt.MQTT_LOG_DEBUG, 'Sending PINGREQ')
        paho.on_log(paho, None, mqtt.MQTT_LOG_DEBUG, 'Received PINGRESP')
        paho.on_log(paho, None, mqtt.MQTT_LOG_INFO, 'Sending nothing')

        assert seen == [('packetsend', ('PINGREQ',)), ('packetreceive', ('PINGRESP',))]

    @pytest.mark.asyncio
    async def test_unsolicited_disconnect(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)
        seen = record(connection, 'error', 'disconnect', 'close')
        properties = SimpleNamespace(ReasonString='Session taken over')

        paho.on_disconnect(paho, None, {}, NOT_AUTHORIZED, properties)

        assert not connection.connected
        assert [event for event, _ in seen] == ['error', 'disconnect', 'close']
        packet = seen[1][1][0]
        assert packet.properties.reason_string == 'Session taken over'
        paho.loop_stop.assert_called()

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_escape(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)

        def broken(*args):
            raise RuntimeError('handler bug')

        connection.on('close', broken)
        paho.on_disconnect(paho, None, {}, SUCCESS, None)

    @pytest.mark.asyncio
    async def test_end(self, capability, paho, config):
        connection = await capability.connect_async('mqtts://example.com', config)
        seen = record(connection, 'end')

        connection.end()
        connection.end()

        assert not connection.connected
        paho.disconnect.assert_called_once()
        assert seen == [('end', ())]


def test_connection_contract(config):
    connection = PahoConnection(config, client_factory=lambda config: MagicMock(),
                                ssl_context_factory=lambda config: None)
    assert connection.connected is False
    assert connection.on('message', print) is connection


def make_identity(common_name):
    """Self-signed EC certificate usable as both device certificate and CA."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return certificate, key_pem


@pytest.fixture(scope='module')
def device_identity():
    return make_identity('test-device')


@pytest.fixture
def tls_config(device_identity):
    certificate, key_pem = device_identity
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
    return ConnectionConfig(client_id='clientId', key=key_pem, cert=cert_pem, ca=cert_pem)


@pytest.fixture
def scratch_dir(tmp_path, monkeypatch):
    """Directory that receives every temporary directory created during the test."""
    scratch = tmp_path / 'scratch'
    scratch.mkdir()
    monkeypatch.setattr(tempfile, 'tempdir', str(scratch))
    return scratch


class TestBuildSslContext:

    def test_client_context_requires_server_certificate(self, tls_config, scratch_dir):
        context = build_ssl_context(tls_config)

        assert isinstance(context, ssl.SSLContext)
        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname is True
        assert context.cert_store_stats()['x509_ca'] == 1

    def test_alpn_protocols_from_config(self, tls_config, scratch_dir, monkeypatch):
        protocols = []
        set_alpn_protocols = ssl.SSLContext.set_alpn_protocols

        def recording(context, alpn_protocols):
            protocols.append(list(alpn_protocols))
            set_alpn_protocols(context, alpn_protocols)

        monkeypatch.setattr(ssl.SSLContext, 'set_alpn_protocols', recording)

        build_ssl_context(tls_config)

        assert protocols == [['x-amzn-mqtt-ca']]

    def test_credentials_only_exist_while_loading(self, tls_config, scratch_dir, monkeypatch):
        seen = []
        load_cert_chain = ssl.SSLContext.load_cert_chain

        def recording(context, certfile, keyfile=None, password=None):
            seen.append((Path(certfile), Path(keyfile), os.stat(keyfile).st_mode & 0o777))
            load_cert_chain(context, certfile, keyfile, password)

        monkeypatch.setattr(ssl.SSLContext, 'load_cert_chain', recording)

        build_ssl_context(tls_config)

        cert_file, key_file, key_mode = seen[0]
        assert cert_file.parent.parent == scratch_dir
        assert key_file.parent == cert_file.parent
        assert key_mode == 0o600
        assert list(scratch_dir.iterdir()) == []

    def test_der_encoded_ca(self, device_identity, tls_config, scratch_dir):
        certificate, _ = device_identity
        der_config = ConnectionConfig(
            client_id='clientId',
            key=tls_config.key,
            cert=tls_config.cert,
            ca=certificate.public_bytes(serialization.Encoding.DER),
        )

        context = build_ssl_context(der_config)

        assert context.cert_store_stats()['x509_ca'] == 1

    def test_mismatched_key_is_rejected_and_cleaned_up(self, tls_config, scratch_dir):
        _, other_key = make_identity('other-device')
        bad_config = ConnectionConfig(client_id='clientId', key=other_key,
                                      cert=tls_config.cert, ca=tls_config.ca)

        with pytest.raises(ssl.SSLError):
            build_ssl_context(bad_config)
        assert list(scratch_dir.iterdir()) == []


@pytest.fixture
def short_timeout(monkeypatch):
    monkeypatch.setattr(paho_client_module, 'OPERATION_TIMEOUT', 0.1)


class TestTimeouts:
    """A broker that never acknowledges must not block the caller."""

    @pytest.mark.asyncio
    async def test_connect_without_connack(self, capability, paho, config, short_timeout):
        paho.loop_start.side_effect = None

        with pytest.raises(MQTTConnectionError, match='Timed out connecting to example.com:443'):
            await capability.connect_async('mqtts://example.com', config)
        paho.loop_stop.assert_called()

    @pytest.mark.asyncio
    async def test_subscribe_without_suback(self, capability, paho, config, short_timeout):
        connection = await capability.connect_async('mqtts://example.com', config)
        paho.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 11)

        with pytest.raises(MQTTSubscribeError, match='Timed out'):
            await connection.subscribe_async(['a'])
        assert connection._pending == {}

    @pytest.mark.asyncio
    async def test_publish_never_written(self, capability, paho, config, short_timeout):
        connection = await capability.connect_async('mqtts://example.com', config)
        paho.publish.return_value = SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS, mid=12)

        with pytest.raises(MQTTPublishError, match='Timed out'):
            await connection.publish_async('topic', 'message')
        assert connection._pending == {}
