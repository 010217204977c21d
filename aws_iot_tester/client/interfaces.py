"""
Contracts for the MQTT client capability used by AWSClient.
"""
from typing import Any, Callable, List, Protocol, Sequence, runtime_checkable

# Events an MQTTConnection must be able to emit
EVENT_NAMES = (
    'packetreceive',
    'packetsend',
    'message',
    'error',
    'close',
    'disconnect',
    'end',
)


@runtime_checkable
class MQTTConnection(Protocol):
    """A live connection returned by MQTTClientCapability.connect_async."""

    @property
    def connected(self) -> bool: ...

    async def subscribe_async(self, topics: Sequence[str]) -> Any: ...

    async def publish_async(self, topic: str, message: str) -> Any: ...

    def end(self) -> None: ...

    def on(self, event: str, handler: Callable[..., None]) -> Any: ...


@runtime_checkable
class MQTTClientCapability(Protocol):
    """Anything that can open an MQTT connection from a URI and a config."""

    async def connect_async(self, uri: str, config: Any) -> MQTTConnection: ...


__all__: List[str] = ['EVENT_NAMES', 'MQTTConnection', 'MQTTClientCapability']
