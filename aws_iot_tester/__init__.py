"""
AWS IoT test client - an interactive MQTT over TLS test harness for AWS IoT Core.
"""

__version__ = "1.0.0"

__all__ = ['__version__']
