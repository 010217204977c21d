"""
Validation utilities for the AWS IoT test client.
"""
import re
from urllib.parse import urlparse

from .exceptions import MQTTValidationError


def validate_endpoint(endpoint: str) -> None:
    """Validate a broker endpoint given as a bare host name (``host[:port]``)."""
    if not endpoint:
        raise MQTTValidationError("Broker endpoint cannot be empty")
    if '://' in endpoint:
        raise MQTTValidationError("Broker endpoint must be a host name without a scheme")
    parsed = urlparse(f"mqtts://{endpoint}")
    try:
        port = parsed.port
    except ValueError as e:
        raise MQTTValidationError(f"Invalid broker endpoint: {str(e)}")
    if not parsed.hostname:
        raise MQTTValidationError("Broker endpoint must include a hostname")
    if parsed.path not in ('', '/') or port == 0:
        raise MQTTValidationError(f"Invalid broker endpoint: {endpoint}")


def validate_topic(topic: str) -> None:
    """Validate MQTT topic format."""
    if not topic:
        raise MQTTValidationError("Topic cannot be empty")

    # MQTT topic validation rules
    if len(topic.encode('utf-8')) > 65535:
        raise MQTTValidationError("Topic length exceeds maximum allowed (65,535 bytes)")

    if '#' in topic and topic[-1] != '#':
        raise MQTTValidationError("Wildcard '#' must be at the end of the topic")

    if topic.count('#') > 1:
        raise MQTTValidationError("Only one '#' wildcard allowed in topic")

    if '#' in topic and len(topic) > 1 and topic[-2] != '/':
        raise MQTTValidationError("Wildcard '#' must occupy a whole topic level")

    for level in topic.split('/'):
        if '+' in level and level != '+':
            raise MQTTValidationError("Wildcard '+' must occupy a whole topic level")

    if '\x00' in topic:
        raise MQTTValidationError("Topic cannot contain the null character")


def validate_publish_topic(topic: str) -> None:
    """Validate a topic name used for publishing (no wildcards)."""
    validate_topic(topic)
    if '#' in topic or '+' in topic:
        raise MQTTValidationError("Wildcards are not allowed in publish topics")


def validate_client_id(client_id: str) -> None:
    """Validate client ID format."""
    if not client_id:
        raise MQTTValidationError("Client ID cannot be empty")

    # AWS IoT accepts up to 128 characters from this set
    if len(client_id) > 128:
        raise MQTTValidationError("Client ID length exceeds maximum allowed (128 characters)")
    if not re.match(r'^[a-zA-Z0-9:_-]+$', client_id):
        raise MQTTValidationError("Client ID can only contain alphanumeric characters, colons, underscores, and hyphens")
