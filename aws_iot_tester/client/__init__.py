"""
MQTT client wrapper and capabilities for the AWS IoT test client.
"""
from .aws_client import AWSClient, ConnectionConfig
from .interfaces import MQTTClientCapability, MQTTConnection
from .paho_client import PahoMQTTClient

__all__ = [
    'AWSClient',
    'ConnectionConfig',
    'MQTTClientCapability',
    'MQTTConnection',
    'PahoMQTTClient'
]
