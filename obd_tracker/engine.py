"""TelemetryEngine -- owns the adapter session end to end.

One engine instance owns the transport, the command channel, the
collection cycle, the polling task and the uploader.  The Presenter is
told about every connection-state change, every new sample and every
upload outcome.  Public methods never raise engine errors; failures end
up as a state change plus a log entry.
"""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

import structlog

from obd_tracker.channel import CommandChannel
from obd_tracker.collector import CollectionCycle
from obd_tracker.config import TrackerSettings
from obd_tracker.decoder import protocol_name
from obd_tracker.errors import AdapterNotResponding, PartialDataError, TransportError
from obd_tracker.initializer import AdapterInitializer
from obd_tracker.presenter import (
    FixedLocationProvider,
    LocationProvider,
    LoggingPresenter,
    Presenter,
)
from obd_tracker.schemas import ConnectionState, ConnectionStatus, VehicleSample
from obd_tracker.transport import Transport, create_transport
from obd_tracker.uploader import Uploader, resolve_device_name

logger = structlog.get_logger(__name__)

CLEAR_DTC_COMMAND = "04"

TransportFactory = Callable[[str, TrackerSettings], Transport]


class TelemetryEngine:
    """Connects to the adapter, polls it on a fixed period, uploads samples."""

    def __init__(
        self,
        settings: TrackerSettings,
        presenter: Optional[Presenter] = None,
        location_provider: Optional[LocationProvider] = None,
        transport_factory: TransportFactory = create_transport,
    ) -> None:
        self._settings = settings
        self._presenter = presenter or LoggingPresenter()
        self._location = location_provider or FixedLocationProvider(
            settings.latitude, settings.longitude
        )
        self._transport_factory = transport_factory
        self._uploader = Uploader(settings, self._presenter, self._location)

        self._state = ConnectionState()
        self._transport: Optional[Transport] = None
        self._channel: Optional[CommandChannel] = None
        self._collector: Optional[CollectionCycle] = None
        self._current_sample: Optional[VehicleSample] = None

        self._connect_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._lost_task: Optional[asyncio.Task] = None
        self._cycle_lock = asyncio.Lock()
        self.reset_failures = 0

    # -- read-only state ----------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected and self._channel is not None

    @property
    def current_sample(self) -> Optional[VehicleSample]:
        return self._current_sample

    @property
    def uploader(self) -> Uploader:
        return self._uploader

    @property
    def cycle(self) -> int:
        return self._collector.cycle if self._collector is not None else 0

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start the upload worker."""
        await self._uploader.start()

    async def close(self) -> None:
        """Disconnect and flush pending uploads."""
        await self.disconnect()
        await self._uploader.close(drain=True, timeout=self._upload_drain_timeout())

    async def connect(self, start_polling: bool = True) -> bool:
        """Connect (WiFi first, then Bluetooth), initialize, start polling.

        Returns ``True`` once the adapter is usable.  A concurrent
        ``disconnect()`` aborts the attempt and makes this return
        ``False``.
        """
        if self.is_connected:
            await self.disconnect()

        task = asyncio.create_task(self._establish(start_polling), name="connect")
        self._connect_task = task
        try:
            await asyncio.wait({task})
        finally:
            if not task.done():
                task.cancel()
            if self._connect_task is task:
                self._connect_task = None
        if task.cancelled():
            return False
        return task.result()

    async def disconnect(self) -> None:
        """Cancel any connect attempt, stop polling, close the transport."""
        logger.info("disconnect_requested")
        connect_task = self._connect_task
        if connect_task is not None and not connect_task.done():
            connect_task.cancel()
            await asyncio.wait({connect_task})
        lost_task = self._lost_task
        if lost_task is not None and not lost_task.done():
            await asyncio.wait({lost_task})
        await self._stop_polling()
        await self._close_transport()
        self._set_state(ConnectionStatus.DISCONNECTED)

    # -- user-triggered operations ------------------------------------------

    async def run_cycle(self) -> Optional[VehicleSample]:
        """Run one collection cycle now; the result becomes current.

        Waits for an in-progress cycle to finish rather than overlapping it.
        """
        if not self.is_connected or self._collector is None:
            logger.warning("cycle_skipped_not_connected")
            return None

        async with self._cycle_lock:
            try:
                sample = await self._collector.run(self._current_sample)
            except TransportError as exc:
                logger.error("cycle_aborted_transport_lost", error=str(exc))
                await self._handle_link_lost(str(exc))
                return None

            self._publish(sample)
            try:
                self._uploader.enqueue(sample)
            except PartialDataError as exc:
                logger.warning("upload_skipped", cycle=self.cycle, reason=str(exc))
            return sample

    async def clear_trouble_codes(self) -> bool:
        """Send Mode 04 and refresh the sample when the adapter confirms."""
        if not self.is_connected or self._channel is None:
            logger.warning("clear_codes_not_connected")
            return False

        try:
            response = await self._channel.exchange(CLEAR_DTC_COMMAND)
        except TransportError as exc:
            await self._handle_link_lost(str(exc))
            return False

        upper = response.upper()
        success = "44" in upper or "OK" in upper
        if not success:
            logger.error("clear_codes_failed", response=response)
            return False

        logger.info("clear_codes_succeeded")
        await self.run_cycle()
        return True

    async def detect_protocol(self) -> Optional[int]:
        """Re-read the active protocol and republish the current sample."""
        if not self.is_connected or self._collector is None:
            logger.warning("detect_protocol_not_connected")
            return None

        try:
            number = await self._collector.detect_protocol()
        except TransportError as exc:
            await self._handle_link_lost(str(exc))
            return None

        if self._current_sample is not None:
            updated = self._current_sample.model_copy(
                update={"protocol_number": number, "protocol_name": protocol_name(number)}
            )
            self._publish(updated)
        return number

    def send_test_sample(self) -> VehicleSample:
        """Publish and upload a fixed sample without touching the adapter."""
        sample = VehicleSample(
            rpm=1500.0,
            speed=60.0,
            engine_load=45.0,
            throttle_position=30.0,
            coolant_temp=85.0,
            voltage=12.4,
            intake_air_temp=25.0,
            maf_rate=15.5,
            fuel_level=75.0,
            short_fuel_trim_1=2.5,
            long_fuel_trim_1=-1.0,
            short_fuel_trim_2=1.8,
            long_fuel_trim_2=-0.5,
            ambient_air_temp=22.0,
            fuel_pressure=300.0,
            timing_advance=12.0,
            engine_runtime=3600,
            fuel_rate=8.5,
            relative_throttle_pos=28.0,
            obd_standard="OBD-II",
            protocol_name=protocol_name(6),
            data_valid=True,
        )
        logger.info("test_sample_created", rpm=sample.rpm, speed=sample.speed)
        self._publish(sample)
        self._uploader.enqueue(sample)
        return sample

    # -- internal: connection -----------------------------------------------

    async def _establish(self, start_polling: bool) -> bool:
        self._set_state(ConnectionStatus.CONNECTING)
        failures: List[str] = []

        for kind in self._settings.transport_order:
            transport = self._transport_factory(kind, self._settings)
            logger.info("transport_attempt", transport=kind)
            try:
                await transport.connect()
            except TransportError as exc:
                logger.warning("transport_connect_failed", transport=kind, error=str(exc))
                failures.append(f"{kind}: {exc}")
                await transport.disconnect()
                continue
            self._attach(transport)
            break
        else:
            reason = "; ".join(failures) or "no transport configured"
            logger.error("connect_failed", reason=reason)
            self._set_state(ConnectionStatus.FAILED, reason)
            return False

        initializer = AdapterInitializer(self._channel, self._settings)
        try:
            result = await initializer.run()
        except AdapterNotResponding as exc:
            await self._close_transport()
            self._set_state(ConnectionStatus.FAILED, str(exc))
            return False
        except TransportError as exc:
            await self._close_transport()
            self._set_state(ConnectionStatus.FAILED, f"link lost during init: {exc}")
            return False

        if not result.reset_ok:
            self.reset_failures += 1
            logger.warning(
                "adapter_reset_failure_tolerated",
                total=self.reset_failures,
                transport=self._transport.kind,
            )
        if not result.vehicle_present:
            logger.warning("adapter_ready_no_vehicle")

        logger.info("adapter_ready", voltage=result.voltage)
        if start_polling:
            self._start_polling()
        return True

    def _attach(self, transport: Transport) -> None:
        self._transport = transport
        self._channel = CommandChannel(transport, self._settings)
        self._collector = CollectionCycle(self._channel, self._settings)
        transport.set_disconnect_callback(self._on_link_lost)
        self._uploader.device_name = resolve_device_name(
            self._settings, transport.kind, transport.peer_name
        )
        status = (
            ConnectionStatus.CONNECTED_BLUETOOTH
            if transport.kind == "bluetooth"
            else ConnectionStatus.CONNECTED_WIFI
        )
        self._set_state(status)
        logger.info(
            "transport_ready",
            transport=transport.kind,
            device_name=self._uploader.device_name,
        )

    async def _close_transport(self) -> None:
        transport = self._transport
        self._transport = None
        self._channel = None
        self._collector = None
        if transport is not None:
            transport.set_disconnect_callback(None)
            await transport.disconnect()

    def _on_link_lost(self, reason: str) -> None:
        # Called from transport callbacks; do the async teardown on a task.
        if self._transport is None:
            return
        logger.warning("link_lost", reason=reason)
        task = asyncio.get_running_loop().create_task(
            self._handle_link_lost(reason), name="link-lost"
        )
        task.add_done_callback(_log_task_failure)
        self._lost_task = task

    async def _handle_link_lost(self, reason: str) -> None:
        if self._transport is None:
            return
        current = asyncio.current_task()
        if self._poll_task is not None and self._poll_task is not current:
            await self._stop_polling()
        else:
            self._poll_task = None
        await self._close_transport()
        self._set_state(ConnectionStatus.DISCONNECTED, reason)

    # -- internal: polling --------------------------------------------------

    def _start_polling(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._poll_loop(), name="collection")
        logger.info(
            "collection_started",
            interval=self._settings.collection_interval_seconds,
        )

    async def _stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("collection_stopped")

    async def _poll_loop(self) -> None:
        """Fixed-period, non-overlapping cycle driver.

        The first cycle runs immediately; each later one starts one
        interval after the previous one started, or right after it
        finished if it overran.
        """
        loop = asyncio.get_running_loop()
        interval = self._settings.collection_interval_seconds
        while self.is_connected:
            started = loop.time()
            await self.run_cycle()
            if not self.is_connected:
                break
            await asyncio.sleep(max(0.0, interval - (loop.time() - started)))

    # -- internal: presenter ------------------------------------------------

    def _set_state(self, status: ConnectionStatus, reason: Optional[str] = None) -> None:
        state = ConnectionState(status=status, reason=reason)
        if state == self._state:
            return
        logger.info("connection_state", status=status.value, reason=reason)
        self._state = state
        self._presenter.on_connection_state(state)

    def _publish(self, sample: VehicleSample) -> None:
        self._current_sample = sample
        self._presenter.on_sample(sample.model_copy(deep=True))

    def _upload_drain_timeout(self) -> float:
        s = self._settings
        per_line = s.upload_max_attempts * (s.upload_connect_timeout + s.upload_retry_delay)
        return per_line * max(1, self._uploader.pending)


def _log_task_failure(task: asyncio.Task) -> None:
    """Done-callback for fire-and-forget tasks: log what they raised."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "background_task_failed",
            task=task.get_name(),
            error=repr(exc),
            exc_info=exc,
        )
