"""
Custom exceptions for the AWS IoT test client.
"""

class MQTTError(Exception):
    """Base exception for AWS IoT test client errors."""
    pass

class CredentialLoadError(MQTTError):
    """Exception raised when a key, certificate or CA file cannot be read."""
    def __init__(self, path, reason=None):
        self.path = str(path)
        message = f"Unable to read credential file: {self.path}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)

class FingerprintError(MQTTError):
    """Exception raised when the certificate fingerprint cannot be computed."""
    pass

class MQTTConnectionError(MQTTError):
    """Exception raised for MQTT connection errors."""
    pass

class MQTTSubscribeError(MQTTError):
    """Exception raised when a subscription is rejected."""
    pass

class MQTTPublishError(MQTTError):
    """Exception raised when a publish fails."""
    pass

class MQTTValidationError(MQTTError):
    """Exception raised for validation errors."""
    pass

ConnectError = MQTTConnectionError
SubscribeError = MQTTSubscribeError
PublishError = MQTTPublishError
