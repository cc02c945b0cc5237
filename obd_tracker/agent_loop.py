"""Main asyncio loop for the OBD tracker."""

from __future__ import annotations

import asyncio
import signal
import sys

import structlog

from obd_tracker.config import TrackerSettings
from obd_tracker.engine import TelemetryEngine, TransportFactory
from obd_tracker.transport import create_transport

logger = structlog.get_logger(__name__)

# Pause between reconnect attempts after a failed or dropped connection.
RECONNECT_DELAY_SECONDS = 10.0


async def run_agent(
    settings: TrackerSettings,
    *,
    once: bool = False,
    check_collector: bool = False,
    test_upload: bool = False,
    transport_factory: TransportFactory = create_transport,
) -> bool:
    """Run the tracker until shutdown.

    Parameters
    ----------
    settings:
        Fully-resolved tracker configuration.
    once:
        If ``True``, connect, run a single collection cycle, wait for
        its upload, then exit.
    check_collector:
        Only test that the collector accepts connections, then exit.
    test_upload:
        Only upload one fixed test sample, then exit.

    Returns ``True`` if the requested work succeeded.
    """
    engine = TelemetryEngine(settings, transport_factory=transport_factory)

    if check_collector:
        return await engine.uploader.check_collector()

    await engine.start()
    try:
        if test_upload:
            engine.send_test_sample()
            await engine.uploader.join()
            outcome = engine.uploader.last_outcome
            return outcome is not None and outcome.success
        if once:
            return await _run_once(engine)
        await _run_forever(engine, settings)
        return True
    finally:
        await engine.close()


async def _run_once(engine: TelemetryEngine) -> bool:
    if not await engine.connect(start_polling=False):
        logger.error("single_run_connect_failed", status=engine.state.describe())
        return False
    sample = await engine.run_cycle()
    await engine.uploader.join()
    return sample is not None and sample.data_valid


async def _run_forever(engine: TelemetryEngine, settings: TrackerSettings) -> None:
    """Keep the engine connected until a shutdown signal arrives."""
    shutdown_event = asyncio.Event()

    # --- signal handling ---------------------------------------------------
    def _request_shutdown() -> None:
        logger.info("shutdown_requested")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown)
    # On Windows, SIGINT is handled by the default KeyboardInterrupt.

    try:
        while not shutdown_event.is_set():
            # --- connect (or reconnect) ------------------------------------
            if not engine.is_connected:
                connected = await engine.connect()
                if not connected:
                    logger.warning(
                        "tracker_connect_failed",
                        status=engine.state.describe(),
                        retry_in=RECONNECT_DELAY_SECONDS,
                    )
                    await _interruptible_sleep(RECONNECT_DELAY_SECONDS, shutdown_event)
                    continue
                logger.info(
                    "tracker_connected",
                    status=engine.state.describe(),
                    interval=settings.collection_interval_seconds,
                )

            await _interruptible_sleep(1.0, shutdown_event)
    finally:
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)


async def _interruptible_sleep(
    seconds: float, event: asyncio.Event
) -> None:
    """Sleep for *seconds* but wake early if *event* is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
