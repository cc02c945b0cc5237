"""Abstract base class for adapter transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional

DisconnectCallback = Callable[[str], None]


class Transport(ABC):
    """Byte pipe to an ELM327 adapter.

    Concrete implementations: ``WiFiTransport`` (TCP), ``BluetoothTransport``
    (GATT write + notify) and ``SimulatedTransport`` (in-process emulator).

    ``kind`` is ``"wifi"`` or ``"bluetooth"`` and decides the connection
    state reported once connected.  ``response_timeout`` is how long the
    command channel waits for a reply over this transport.
    """

    kind: str = "wifi"
    response_timeout: float = 10.0
    peer_name: Optional[str] = None

    def __init__(self) -> None:
        self._on_lost: Optional[DisconnectCallback] = None

    def set_disconnect_callback(self, callback: Optional[DisconnectCallback]) -> None:
        """Register *callback* to be told when the link drops unexpectedly."""
        self._on_lost = callback

    def _notify_lost(self, reason: str) -> None:
        if self._on_lost is not None:
            self._on_lost(reason)

    @abstractmethod
    async def connect(self) -> None:
        """Single connection attempt.

        Raises:
            TransportError: unreachable host, timeout, discovery failure.
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Tear down the link.  Safe to call more than once."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Return ``True`` while the link is up."""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Write one frame.

        Raises:
            TransportError: the write failed or the link is down.
        """

    @abstractmethod
    async def receive(self) -> bytes:
        """Wait for the next chunk of reply bytes.

        Returns ``b""`` when the peer closed the link.
        """

    async def discard_pending(self) -> None:
        """Drop reply bytes left over from an earlier exchange."""
