"""
Utility functions for the AWS IoT test client.
"""
from .cert_utils import find_ca_path, generate_certificate_id
from .exceptions import MQTTError
from .logger import log

__all__ = [
    'find_ca_path',
    'generate_certificate_id',
    'MQTTError',
    'log'
]
