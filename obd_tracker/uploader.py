"""Ships samples to the collector as ``*OBD,...,#`` lines over TCP.

Features:
* One fresh TCP connection per upload; the line is sent, then closed.
* Fixed-delay retry (3 attempts, 5 s apart, 15 s connect timeout).
* Runs on its own worker task fed by a bounded queue, so a slow or
  failing collector never delays the next collection cycle.
* ``dry_run`` mode: format and log, never open a socket.
"""

from __future__ import annotations

import asyncio
import socket
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from obd_tracker.config import TrackerSettings
from obd_tracker.errors import PartialDataError, UploadError
from obd_tracker.presenter import LocationProvider, Presenter
from obd_tracker.schemas import Location, UploadOutcome, VehicleSample

logger = structlog.get_logger(__name__)

MESSAGE_HEADER = "*OBD"
MESSAGE_TERMINATOR = "#"

# Data fields between the header and the terminator, in wire order.
MESSAGE_FIELDS = (
    "device_name",
    "time",
    "rpm",
    "speed",
    "engine_load",
    "coolant_temp",
    "intake_air_temp",
    "throttle_position",
    "fuel_level",
    "voltage",
    "ambient_air_temp",
    "latitude",
    "longitude",
    "runtime_minutes",
    "maf_rate",
    "timing_advance",
    "relative_throttle_pos",
    "short_fuel_trim_1",
    "long_fuel_trim_1",
    "short_fuel_trim_2",
    "long_fuel_trim_2",
    "obd_standard",
    "protocol_number",
    "dtc_count",
    "raw_dtc",
    "mil_on",
    "pids_read",
    "pids_total",
)
# Header plus data fields; the terminator follows.
MESSAGE_FIELD_COUNT = 1 + len(MESSAGE_FIELDS)

_INT_FIELDS = {
    "rpm",
    "coolant_temp",
    "intake_air_temp",
    "ambient_air_temp",
    "runtime_minutes",
    "protocol_number",
    "dtc_count",
    "pids_read",
    "pids_total",
}
_TEXT_FIELDS = {"device_name", "time", "obd_standard", "raw_dtc"}


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------

def _safe(text: str) -> str:
    return text.replace(",", " ").replace("\r", " ").replace("\n", " ").strip()


def format_message(
    sample: VehicleSample,
    device_name: str,
    location: Optional[Location] = None,
    now: Optional[datetime] = None,
) -> str:
    """Render *sample* as a single collector line.

    A missing location is sent as ``0.000000,0.000000``.
    """
    now = now or datetime.now()
    lat = location.latitude if location is not None else 0.0
    lon = location.longitude if location is not None else 0.0

    fields = [
        MESSAGE_HEADER,
        _safe(device_name),
        now.strftime("%H%M%S"),
        f"{int(sample.rpm)}",
        f"{sample.speed:.1f}",
        f"{sample.engine_load:.1f}",
        f"{int(sample.coolant_temp)}",
        f"{int(sample.intake_air_temp)}",
        f"{sample.throttle_position:.1f}",
        f"{sample.fuel_level:.1f}",
        f"{sample.voltage:.2f}",
        f"{int(sample.ambient_air_temp)}",
        f"{lat:.6f}",
        f"{lon:.6f}",
        f"{sample.engine_runtime // 60}",
        f"{sample.maf_rate:.2f}",
        f"{sample.timing_advance:.1f}",
        f"{sample.relative_throttle_pos:.1f}",
        f"{sample.short_fuel_trim_1:.1f}",
        f"{sample.long_fuel_trim_1:.1f}",
        f"{sample.short_fuel_trim_2:.1f}",
        f"{sample.long_fuel_trim_2:.1f}",
        _safe(sample.obd_standard),
        f"{sample.protocol_number}",
        f"{sample.dtc_count}",
        f"[{_safe(sample.raw_dtc)}]",
        "1" if sample.mil_on else "0",
        f"{sample.pids_read}",
        f"{sample.pids_total}",
        MESSAGE_TERMINATOR,
    ]
    return ",".join(fields)


def parse_message(line: str) -> Dict[str, Any]:
    """Parse a collector line back into named, typed fields.

    Raises:
        ValueError: wrong header/terminator or field count.
    """
    parts = line.strip().split(",")
    if len(parts) != MESSAGE_FIELD_COUNT + 1:
        raise ValueError(
            f"expected {MESSAGE_FIELD_COUNT + 1} comma-separated tokens, got {len(parts)}"
        )
    if parts[0] != MESSAGE_HEADER or parts[-1] != MESSAGE_TERMINATOR:
        raise ValueError("message must start with '*OBD' and end with '#'")

    result: Dict[str, Any] = {}
    for name, raw in zip(MESSAGE_FIELDS, parts[1:-1]):
        if name == "raw_dtc":
            result[name] = raw[1:-1] if raw.startswith("[") and raw.endswith("]") else raw
        elif name == "mil_on":
            result[name] = raw == "1"
        elif name in _TEXT_FIELDS:
            result[name] = raw
        elif name in _INT_FIELDS:
            result[name] = int(raw)
        else:
            result[name] = float(raw)
    return result


def resolve_device_name(
    settings: TrackerSettings,
    transport_kind: Optional[str] = None,
    peer_name: Optional[str] = None,
    hostname: Optional[str] = None,
) -> str:
    """Pick the device name reported to the collector.

    Order: configured name; for Bluetooth the second ``_``-separated
    part of the peripheral name (e.g. ``OBD_TRK123456`` -> ``TRK123456``)
    or the whole name; otherwise prefix + last 8 chars of the host name.
    """
    if settings.device_name:
        return settings.device_name
    if transport_kind == "bluetooth" and peer_name:
        parts = peer_name.split("_")
        if len(parts) >= 2 and parts[1]:
            return parts[1]
        return peer_name
    host = hostname if hostname is not None else socket.gethostname()
    return f"{settings.device_name_prefix}{host[-8:]}"


# ---------------------------------------------------------------------------
# Uploader
# ---------------------------------------------------------------------------

class Uploader:
    """Sends formatted samples to the collector from a background worker."""

    def __init__(
        self,
        settings: TrackerSettings,
        presenter: Presenter,
        location_provider: LocationProvider,
    ) -> None:
        self._host = settings.collector_host
        self._port = settings.collector_port
        self._max_attempts = settings.upload_max_attempts
        self._retry_delay = settings.upload_retry_delay
        self._connect_timeout = settings.upload_connect_timeout
        self._dry_run = settings.dry_run
        self._presenter = presenter
        self._location = location_provider
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=settings.upload_queue_max)
        self._worker: Optional[asyncio.Task] = None
        self.device_name = resolve_device_name(settings)
        self.last_outcome: Optional[UploadOutcome] = None

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="uploader")

    async def close(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """Stop the worker, optionally waiting for queued lines first."""
        if self._worker is None:
            return
        if drain and not self._worker.done():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("upload_drain_timeout", pending=self._queue.qsize())
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    # -- public API ---------------------------------------------------------

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, sample: VehicleSample) -> None:
        """Format *sample* now and queue it for upload.

        Raises:
            PartialDataError: the sample carries no valid data.
        """
        if not sample.data_valid:
            raise PartialDataError("no valid data collected, skipping upload", sample)

        line = format_message(sample, self.device_name, self._location.current_location())
        if self._queue.full():
            self._queue.get_nowait()
            self._queue.task_done()
            logger.warning("upload_queue_full_dropped_oldest", size=self._queue.qsize())
        self._queue.put_nowait(line)
        logger.debug("upload_queued", pending=self._queue.qsize(), chars=len(line))

    async def join(self) -> None:
        """Wait until every queued line has been handled."""
        await self._queue.join()

    async def upload_line(self, line: str) -> bool:
        """Send *line* with retry.  Returns ``True`` on success.

        Never raises for network failures; the final outcome is pushed
        to the presenter.
        """
        if self._dry_run:
            logger.info("dry_run_upload", line=line)
            self._report(UploadOutcome(success=True, status="Dry run", attempts=0))
            return True

        for attempt in range(1, self._max_attempts + 1):
            logger.info("upload_attempt", attempt=attempt, max_attempts=self._max_attempts)
            try:
                await self._send_once(line)
            except UploadError as exc:
                if attempt < self._max_attempts:
                    logger.warning(
                        "upload_retry",
                        attempt=attempt,
                        max_attempts=self._max_attempts,
                        error=str(exc),
                        retry_in=self._retry_delay,
                    )
                    self._report(
                        UploadOutcome(
                            success=False,
                            status=f"Retrying... ({attempt}/{self._max_attempts})",
                            attempts=attempt,
                            final=False,
                        )
                    )
                    await asyncio.sleep(self._retry_delay)
                    continue
                logger.error(
                    "upload_failed",
                    attempts=attempt,
                    host=self._host,
                    port=self._port,
                    error=str(exc),
                )
                self._report(
                    UploadOutcome(success=False, status=f"Failed: {exc}", attempts=attempt)
                )
                return False

            logger.info("upload_succeeded", attempt=attempt, chars=len(line))
            self._report(
                UploadOutcome(
                    success=True,
                    status=datetime.now().strftime("%H:%M:%S"),
                    attempts=attempt,
                )
            )
            return True
        return False

    async def check_collector(self) -> bool:
        """Open and close one connection to the collector, sending nothing."""
        logger.info("collector_check", host=self._host, port=self._port)
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                timeout=self._connect_timeout,
            )
        except (asyncio.TimeoutError, OSError) as exc:
            logger.error("collector_check_failed", error=str(exc) or type(exc).__name__)
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        logger.info("collector_check_ok")
        return True

    # -- internal -----------------------------------------------------------

    async def _run(self) -> None:
        while True:
            line = await self._queue.get()
            try:
                await self.upload_line(line)
            finally:
                self._queue.task_done()

    async def _send_once(self, line: str) -> None:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UploadError("Connection timeout") from exc
        except OSError as exc:
            raise UploadError(f"Connection failed: {exc}") from exc

        try:
            writer.write(line.encode("ascii", errors="replace"))
            await writer.drain()
        except OSError as exc:
            raise UploadError(f"Send failed: {exc}") from exc
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    def _report(self, outcome: UploadOutcome) -> None:
        if outcome.final:
            self.last_outcome = outcome
        self._presenter.on_upload(outcome)
