"""BluetoothTransport -- ELM327 over Bluetooth LE GATT (bleak).

The adapter is found by scanning and matching advertised names against
a keyword list; as a fallback any named device stronger than an RSSI
threshold is tried.  After connecting, a characteristic with
write-without-response (preferred) or write becomes the command sink,
and a notify/indicate characteristic becomes the reply source.
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import structlog
from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from obd_tracker.config import TrackerSettings
from obd_tracker.errors import TransportError
from obd_tracker.transport.base import Transport

logger = structlog.get_logger(__name__)

_WRITE_NO_RESPONSE = "write-without-response"
_WRITE = "write"
_NOTIFY = "notify"
_INDICATE = "indicate"


class BluetoothTransport(Transport):
    """GATT write/notify pipe to a BLE ELM327 adapter."""

    kind = "bluetooth"

    def __init__(self, settings: TrackerSettings) -> None:
        super().__init__()
        self._keywords = list(settings.ble_name_keywords)
        self._rssi_threshold = settings.ble_rssi_threshold
        self._scan_timeout = settings.ble_scan_timeout
        self._connect_timeout = settings.ble_connect_timeout
        self.response_timeout = settings.ble_response_timeout
        self._client: Optional[BleakClient] = None
        self._write_char: Any = None
        self._notify_char: Any = None
        self._write_with_response = False
        self._replies: asyncio.Queue = asyncio.Queue()

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        device, name = await self._scan()
        self.peer_name = name

        client = BleakClient(device, disconnected_callback=self._on_disconnected)
        try:
            await asyncio.wait_for(client.connect(), timeout=self._connect_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f"Bluetooth connect to '{name}' timed out after "
                f"{self._connect_timeout:g} seconds"
            ) from exc
        except (BleakError, OSError) as exc:
            raise TransportError(f"Bluetooth connect to '{name}' failed: {exc}") from exc

        write_char, notify_char = select_characteristics(client.services)
        if write_char is None:
            await _quiet_disconnect(client)
            raise TransportError(f"No writable characteristic on '{name}'")

        self._write_char = write_char
        self._write_with_response = _WRITE_NO_RESPONSE not in write_char.properties
        self._notify_char = notify_char or write_char
        if _can_notify(self._notify_char):
            try:
                await client.start_notify(self._notify_char, self._on_notify)
            except BleakError as exc:
                await _quiet_disconnect(client)
                raise TransportError(f"Enabling notifications failed: {exc}") from exc
        else:
            logger.warning("ble_no_notify_characteristic", device=name)

        self._client = client
        logger.info(
            "ble_connected",
            device=name,
            write_char=str(write_char.uuid),
            notify_char=str(self._notify_char.uuid),
            write_with_response=self._write_with_response,
        )

    async def _scan(self) -> Tuple[Any, str]:
        logger.info("ble_scanning", timeout=self._scan_timeout)
        try:
            found = await BleakScanner.discover(
                timeout=self._scan_timeout, return_adv=True
            )
        except (BleakError, OSError) as exc:
            raise TransportError(f"Bluetooth scan failed: {exc}") from exc

        candidates = []
        for device, adv in found.values():
            name = adv.local_name or device.name
            logger.debug("ble_device_seen", name=name, rssi=adv.rssi)
            candidates.append((name, adv.rssi, device))

        choice = pick_adapter(candidates, self._keywords, self._rssi_threshold)
        if choice is None:
            raise TransportError(
                f"No OBD adapter found after {self._scan_timeout:g} second scan"
            )
        name, rssi, device = choice
        logger.info("ble_adapter_found", device=name, rssi=rssi)
        return device, name

    async def disconnect(self) -> None:
        client = self._client
        self._client = None
        if client is None:
            return
        if self._notify_char is not None and _can_notify(self._notify_char):
            try:
                await client.stop_notify(self._notify_char)
            except (BleakError, OSError) as exc:
                logger.debug("ble_stop_notify_error", error=str(exc))
        await _quiet_disconnect(client)
        logger.info("ble_disconnected", device=self.peer_name)

    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    # -- I/O ----------------------------------------------------------------

    async def send(self, data: bytes) -> None:
        if self._client is None:
            raise TransportError("Bluetooth transport is not connected")
        try:
            await self._client.write_gatt_char(
                self._write_char, data, response=self._write_with_response
            )
        except (BleakError, OSError) as exc:
            raise TransportError(f"WRITE_ERROR: {exc}") from exc

    async def receive(self) -> bytes:
        return await self._replies.get()

    async def discard_pending(self) -> None:
        while not self._replies.empty():
            self._replies.get_nowait()

    # -- callbacks ----------------------------------------------------------

    def _on_notify(self, _sender: Any, data: bytearray) -> None:
        self._replies.put_nowait(bytes(data))

    def _on_disconnected(self, _client: BleakClient) -> None:
        if self._client is None:
            return
        logger.warning("ble_peripheral_disconnected", device=self.peer_name)
        self._client = None
        # Wake any pending receive() with EOF.
        self._replies.put_nowait(b"")
        self._notify_lost("Bluetooth Disconnected")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def is_obd_name(name: Optional[str], keywords: Iterable[str]) -> bool:
    """Case-insensitive substring match of *name* against *keywords*."""
    if not name:
        return False
    upper = name.upper()
    return any(keyword.upper() in upper for keyword in keywords)


def pick_adapter(
    candidates: Sequence[Tuple[Optional[str], int, Any]],
    keywords: Iterable[str],
    rssi_threshold: int,
) -> Optional[Tuple[str, int, Any]]:
    """Choose the device to connect to from ``(name, rssi, device)`` triples.

    Keyword matches win over the RSSI fallback; within a group the
    strongest signal wins.
    """
    keywords = list(keywords)
    named = [c for c in candidates if c[0]]
    by_name = [c for c in named if is_obd_name(c[0], keywords)]
    pool = by_name or [c for c in named if c[1] > rssi_threshold]
    if not pool:
        return None
    return max(pool, key=lambda c: c[1])


def select_characteristics(services: Iterable[Any]) -> Tuple[Any, Any]:
    """Return ``(write_char, notify_char)`` from discovered GATT services.

    Write-without-response is preferred over write.  A notify/indicate
    characteristic in the writer's own service is preferred over one
    elsewhere.  Either element may be ``None``.
    """
    no_response: List[Tuple[Any, Any]] = []
    with_response: List[Tuple[Any, Any]] = []
    notifiers: List[Tuple[Any, Any]] = []

    for service in services:
        for char in service.characteristics:
            props = char.properties
            logger.debug(
                "ble_characteristic",
                service=str(service.uuid),
                uuid=str(char.uuid),
                properties=",".join(props),
            )
            if _WRITE_NO_RESPONSE in props:
                no_response.append((service, char))
            elif _WRITE in props:
                with_response.append((service, char))
            if _can_notify(char):
                notifiers.append((service, char))

    writers = no_response or with_response
    if not writers:
        return None, (notifiers[0][1] if notifiers else None)

    write_service, write_char = writers[0]
    for service, char in notifiers:
        if service is write_service:
            return write_char, char
    return write_char, (notifiers[0][1] if notifiers else None)


def _can_notify(char: Any) -> bool:
    return _NOTIFY in char.properties or _INDICATE in char.properties


async def _quiet_disconnect(client: BleakClient) -> None:
    try:
        await client.disconnect()
    except (BleakError, OSError) as exc:
        logger.debug("ble_disconnect_error", error=str(exc))
