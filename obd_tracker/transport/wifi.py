"""WiFiTransport -- plain TCP to a WiFi ELM327 adapter.

The adapter listens on a fixed host/port (usually 192.168.0.10:35000)
and speaks the AT-command text protocol directly over the socket.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from obd_tracker.config import TrackerSettings
from obd_tracker.errors import TransportError
from obd_tracker.transport.base import Transport

logger = structlog.get_logger(__name__)

_READ_SIZE = 1024
_DRAIN_WINDOW = 0.01


class WiFiTransport(Transport):
    """asyncio stream connection to the adapter's TCP endpoint."""

    kind = "wifi"

    def __init__(self, settings: TrackerSettings) -> None:
        super().__init__()
        self._host = settings.obd_wifi_host
        self._port = settings.obd_wifi_port
        self._connect_timeout = settings.wifi_connect_timeout
        self._handshake_timeout = settings.wifi_handshake_timeout
        self.response_timeout = settings.wifi_response_timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        logger.info("wifi_connecting", host=self._host, port=self._port)
        try:
            self._reader, self._writer = await asyncio.wait_for(
                self._open(), timeout=self._handshake_timeout
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f"WiFi connection timeout after {self._handshake_timeout:g} seconds"
            ) from exc
        except OSError as exc:
            raise TransportError(f"WiFi connection failed: {exc}") from exc
        logger.info("wifi_connected", host=self._host, port=self._port)

    async def _open(self):
        return await asyncio.wait_for(
            asyncio.open_connection(self._host, self._port),
            timeout=self._connect_timeout,
        )

    async def disconnect(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as exc:
            logger.debug("wifi_close_error", error=str(exc))
        logger.info("wifi_disconnected", host=self._host)

    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    # -- I/O ----------------------------------------------------------------

    async def send(self, data: bytes) -> None:
        if self._writer is None:
            raise TransportError("WiFi transport is not connected")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as exc:
            raise TransportError(f"WiFi send failed: {exc}") from exc

    async def receive(self) -> bytes:
        if self._reader is None:
            raise TransportError("WiFi transport is not connected")
        try:
            chunk = await self._reader.read(_READ_SIZE)
        except OSError as exc:
            raise TransportError(f"WiFi receive failed: {exc}") from exc
        if not chunk:
            self._notify_lost("WiFi adapter closed the connection")
        return chunk

    async def discard_pending(self) -> None:
        """Read and drop whatever the adapter already sent.

        Stops at the first quiet ``_DRAIN_WINDOW`` or at EOF; EOF itself
        is left for the next ``receive()`` to report.
        """
        if self._reader is None:
            return
        dropped = b""
        while True:
            try:
                chunk = await asyncio.wait_for(
                    self._reader.read(_READ_SIZE), timeout=_DRAIN_WINDOW
                )
            except asyncio.TimeoutError:
                break
            except OSError as exc:
                logger.debug("wifi_drain_error", error=str(exc))
                break
            if not chunk:
                break
            dropped += chunk
        if dropped:
            logger.warning(
                "wifi_stale_bytes_discarded",
                data=dropped.decode("utf-8", errors="replace"),
            )
