"""Shared fixtures for the AWS IoT test client tests."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from aws_iot_tester.client import aws_client as aws_client_module
from aws_iot_tester.client.aws_client import AWSClient

FINGERPRINT_OUTPUT = (
    'sha256 Fingerprint=B1:14:32:88:70:39:D2:A0:D9:F7:15:01:B4:CC:56:14:'
    'D9:53:FD:28:6C:6B:C0:69:34:F0:62:B3:ED:B1:9C:BA'
)
CERTIFICATE_ID = 'b11432887039d2a0d9f71501b4cc5614d953fd286c6bc06934f062b3edb19cba'
FILE_CONTENT = b'file content'


class LogRecorder:
    """Stands in for ``log()`` and remembers every call."""

    def __init__(self):
        self.calls = []

    def __call__(self, message, detail=None):
        self.calls.append((message, detail))
        return message

    @property
    def messages(self):
        return [message for message, _ in self.calls]

    def clear(self):
        self.calls.clear()


@pytest.fixture
def log_calls(monkeypatch):
    recorder = LogRecorder()
    monkeypatch.setattr(aws_client_module, 'log', recorder)
    return recorder


@pytest.fixture
def credential_files(tmp_path):
    paths = {}
    for name in ('cert', 'key', 'ca'):
        path = tmp_path / f'{name}.pem'
        path.write_bytes(FILE_CONTENT)
        paths[name] = str(path)
    return paths


@pytest.fixture
def mock_connection():
    """Connection double recording the handlers registered with ``on``."""
    connection = MagicMock()
    connection.connected = True
    connection.subscribe_async = AsyncMock()
    connection.publish_async = AsyncMock()
    connection.callbacks = {}

    def on(event, callback):
        connection.callbacks[event] = callback

    connection.on.side_effect = on

    def end():
        connection.connected = False

    connection.end.side_effect = end
    return connection


@pytest.fixture
def mock_mqtt(mock_connection):
    mqtt = MagicMock()
    mqtt.connect_async = AsyncMock(return_value=mock_connection)
    return mqtt


@pytest.fixture
def aws_client(mock_mqtt, credential_files, log_calls):
    return AWSClient(
        mock_mqtt,
        credential_files['cert'],
        credential_files['key'],
        credential_files['ca'],
        'clientId',
        ['topic'],
        fingerprint_runner=lambda cert_path: FINGERPRINT_OUTPUT,
    )
