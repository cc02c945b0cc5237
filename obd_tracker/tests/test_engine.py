"""Tests for obd_tracker.engine -- connect, poll, upload, user actions."""

from __future__ import annotations

import asyncio
from typing import List

import pytest
from structlog.testing import capture_logs

from obd_tracker.engine import TelemetryEngine
from obd_tracker.schemas import ConnectionStatus
from obd_tracker.transport.simulation import ELM327Emulator, SimulatedTransport
from obd_tracker.transport.wifi import WiFiTransport
from obd_tracker.uploader import parse_message


class SimFactory:
    """Transport factory handing out ``SimulatedTransport`` instances."""

    def __init__(self, emulator: ELM327Emulator, **overrides) -> None:
        self.emulator = emulator
        self.overrides = overrides
        self.created: List[SimulatedTransport] = []

    def __call__(self, kind, settings):
        transport = SimulatedTransport(
            self.emulator,
            kind=self.overrides.get("kind", kind),
            response_timeout=0.5,
            peer_name=self.overrides.get("peer_name"),
            fail_connect=self.overrides.get("fail_connect"),
        )
        self.created.append(transport)
        return transport


async def _start_elm_server(emulator: ELM327Emulator):
    """Loopback TCP server speaking ELM327 like a WiFi adapter."""

    async def handler(reader, writer):
        while True:
            try:
                data = await reader.readuntil(b"\r")
            except (asyncio.IncompleteReadError, ConnectionError):
                break
            writer.write(emulator.respond(data.decode("ascii")))
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


async def _start_collector(lines: List[str]):
    async def handler(reader, writer):
        data = await reader.read()
        if data:
            lines.append(data.decode("ascii"))
        writer.close()

    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# End to end over real sockets
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_wifi_cycle_uploads_one_line(settings_factory, presenter) -> None:
    emulator = ELM327Emulator("healthy")
    elm_server, elm_port = await _start_elm_server(emulator)
    uploads: List[str] = []
    collector, collector_port = await _start_collector(uploads)

    settings = settings_factory(
        obd_transport="wifi",
        obd_wifi_host="127.0.0.1",
        obd_wifi_port=elm_port,
        collector_port=collector_port,
    )
    engine = TelemetryEngine(settings, presenter)
    await engine.start()
    try:
        assert await engine.connect(start_polling=False)
        assert engine.state.status is ConnectionStatus.CONNECTED_WIFI

        sample = await engine.run_cycle()
        await engine.uploader.join()
        await _wait_for(lambda: len(uploads) == 1)
    finally:
        await engine.close()
        for server in (elm_server, collector):
            server.close()
            await server.wait_closed()

    assert sample is not None and sample.data_valid
    assert len(uploads) == 1
    line = uploads[0]
    assert line.startswith("*OBD,TESTCAR,")
    assert line.endswith(",#")
    assert len(line.split(",")) == 30
    parsed = parse_message(line)
    assert parsed["rpm"] == 1000
    assert parsed["pids_read"] == 20
    assert parsed["pids_total"] == 20
    assert engine.state.status is ConnectionStatus.DISCONNECTED
    statuses = [s.status for s in presenter.states]
    assert statuses[:2] == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED_WIFI]


@pytest.mark.asyncio
async def test_wifi_timeout_falls_back_to_bluetooth(
    settings_factory, presenter, monkeypatch
) -> None:
    async def hang(host, port, **kwargs):
        await asyncio.sleep(10)

    monkeypatch.setattr(asyncio, "open_connection", hang)
    settings = settings_factory(
        obd_transport="auto",
        wifi_handshake_timeout=0.05,
        device_name="",
        dry_run=True,
    )
    ble_factory = SimFactory(
        ELM327Emulator("healthy"), kind="bluetooth", peer_name="OBD_TRK123456"
    )

    def factory(kind, s):
        if kind == "wifi":
            return WiFiTransport(s)
        return ble_factory(kind, s)

    engine = TelemetryEngine(settings, presenter, transport_factory=factory)
    try:
        assert await engine.connect(start_polling=False)
        assert engine.state.status is ConnectionStatus.CONNECTED_BLUETOOTH
        assert engine.uploader.device_name == "TRK123456"
    finally:
        await engine.close()


# ---------------------------------------------------------------------------
# Connection outcomes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_all_transports_fail(settings_factory, presenter) -> None:
    factory = SimFactory(ELM327Emulator("healthy"), fail_connect="unreachable")
    engine = TelemetryEngine(
        settings_factory(obd_transport="auto"), presenter, transport_factory=factory
    )

    assert not await engine.connect()

    assert engine.state.status is ConnectionStatus.FAILED
    assert engine.state.reason == "wifi: unreachable; bluetooth: unreachable"
    assert len(factory.created) == 2


@pytest.mark.asyncio
async def test_adapter_not_responding(settings_factory, presenter) -> None:
    factory = SimFactory(ELM327Emulator("healthy", responses={"ATRV": "?"}))
    engine = TelemetryEngine(settings_factory(), presenter, transport_factory=factory)

    assert not await engine.connect()

    assert engine.state.status is ConnectionStatus.FAILED
    assert engine.state.describe().startswith("Failed: ELM327 Not Responding")
    assert not factory.created[0].is_connected()


@pytest.mark.asyncio
async def test_reset_failure_counted(settings_factory, presenter) -> None:
    factory = SimFactory(ELM327Emulator("healthy", responses={"ATZ": "ERROR"}))
    engine = TelemetryEngine(settings_factory(), presenter, transport_factory=factory)
    try:
        assert await engine.connect(start_polling=False)
        assert engine.reset_failures == 1
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_no_vehicle_connects_and_reads_voltage(settings_factory, presenter) -> None:
    factory = SimFactory(ELM327Emulator("no_vehicle"))
    engine = TelemetryEngine(
        settings_factory(dry_run=True), presenter, transport_factory=factory
    )
    try:
        assert await engine.connect(start_polling=False)
        sample = await engine.run_cycle()
    finally:
        await engine.close()

    assert sample.pids_read == 1
    assert sample.voltage == pytest.approx(12.3)


@pytest.mark.asyncio
async def test_disconnect_aborts_connect(settings_factory, presenter, monkeypatch) -> None:
    async def hang(host, port, **kwargs):
        await asyncio.sleep(10)

    monkeypatch.setattr(asyncio, "open_connection", hang)
    engine = TelemetryEngine(
        settings_factory(obd_transport="wifi", wifi_handshake_timeout=5.0), presenter
    )

    attempt = asyncio.create_task(engine.connect())
    await _wait_for(lambda: engine.state.status is ConnectionStatus.CONNECTING)
    await engine.disconnect()

    assert await asyncio.wait_for(attempt, timeout=1.0) is False
    assert engine.state.status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_link_loss_stops_polling(settings_factory, presenter) -> None:
    factory = SimFactory(ELM327Emulator("healthy"), kind="bluetooth")
    engine = TelemetryEngine(
        settings_factory(dry_run=True, collection_interval_seconds=10.0),
        presenter,
        transport_factory=factory,
    )
    try:
        assert await engine.connect()
        await _wait_for(lambda: len(presenter.samples) == 1)

        factory.created[0].drop_link("Bluetooth Disconnected")
        await _wait_for(lambda: engine.state.status is ConnectionStatus.DISCONNECTED)

        assert engine.state.reason == "Bluetooth Disconnected"
        assert not engine.is_connected
        assert await engine.run_cycle() is None
    finally:
        await engine.close()


class WedgedTransport(SimulatedTransport):
    """Simulated link whose teardown blows up."""

    async def disconnect(self) -> None:
        await super().disconnect()
        raise RuntimeError("adapter wedged")


@pytest.mark.asyncio
async def test_link_loss_handler_failure_is_logged(settings_factory, presenter) -> None:
    created: List[WedgedTransport] = []

    def factory(kind, settings):
        transport = WedgedTransport(
            ELM327Emulator("healthy"), kind="bluetooth", response_timeout=0.5
        )
        created.append(transport)
        return transport

    engine = TelemetryEngine(
        settings_factory(dry_run=True), presenter, transport_factory=factory
    )
    with capture_logs() as logs:
        assert await engine.connect(start_polling=False)
        created[0].drop_link("Bluetooth Disconnected")
        await engine.disconnect()

    failures = [e for e in logs if e["event"] == "background_task_failed"]
    assert len(failures) == 1
    assert failures[0]["task"] == "link-lost"
    assert "adapter wedged" in failures[0]["error"]
    assert engine.state.status is ConnectionStatus.DISCONNECTED
    assert not engine.is_connected


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_polling_runs_cycles_in_sequence(settings_factory, presenter) -> None:
    factory = SimFactory(ELM327Emulator("healthy"))
    engine = TelemetryEngine(
        settings_factory(dry_run=True), presenter, transport_factory=factory
    )
    await engine.start()
    try:
        assert await engine.connect()
        await _wait_for(lambda: len(presenter.samples) >= 3)
    finally:
        await engine.close()

    first, second, third = presenter.samples[:3]
    assert first.pids_total == 20
    assert second.pids_total == 9
    assert third.pids_total == 9
    assert engine.current_sample is not None
    assert any(u.status == "Dry run" for u in presenter.uploads)


@pytest.mark.asyncio
async def test_invalid_sample_is_not_uploaded(settings_factory, presenter) -> None:
    # The voltage probe passes during init, then nothing answers.
    emulator = ELM327Emulator(
        scenario=None, responses={"ATRV": ["12.5V", "NO DATA"]}, default="NO DATA"
    )
    factory = SimFactory(emulator)
    engine = TelemetryEngine(
        settings_factory(dry_run=True), presenter, transport_factory=factory
    )
    try:
        assert await engine.connect(start_polling=False)
        sample = await engine.run_cycle()
    finally:
        await engine.close()

    assert not sample.data_valid
    assert presenter.samples[-1].data_valid is False
    assert engine.uploader.pending == 0
    assert presenter.uploads == []


# ---------------------------------------------------------------------------
# User actions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_clear_trouble_codes(settings_factory, presenter) -> None:
    emulator = ELM327Emulator("misfire")
    factory = SimFactory(emulator)
    engine = TelemetryEngine(
        settings_factory(dry_run=True), presenter, transport_factory=factory
    )
    try:
        assert await engine.connect(start_polling=False)
        assert await engine.clear_trouble_codes()
    finally:
        await engine.close()

    assert "04" in emulator.sent
    # confirmation triggers an immediate cycle
    assert len(presenter.samples) == 1


@pytest.mark.asyncio
async def test_clear_trouble_codes_rejected(settings_factory, presenter) -> None:
    factory = SimFactory(ELM327Emulator("misfire", responses={"04": "NO DATA"}))
    engine = TelemetryEngine(settings_factory(), presenter, transport_factory=factory)
    try:
        assert await engine.connect(start_polling=False)
        assert not await engine.clear_trouble_codes()
    finally:
        await engine.close()

    assert presenter.samples == []


@pytest.mark.asyncio
async def test_actions_when_disconnected(fast_settings, presenter) -> None:
    engine = TelemetryEngine(fast_settings, presenter)
    assert await engine.run_cycle() is None
    assert await engine.clear_trouble_codes() is False
    assert await engine.detect_protocol() is None


@pytest.mark.asyncio
async def test_detect_protocol_updates_sample(settings_factory, presenter) -> None:
    factory = SimFactory(ELM327Emulator("healthy", responses={"ATDPN": ["A6", "A7"]}))
    engine = TelemetryEngine(
        settings_factory(dry_run=True), presenter, transport_factory=factory
    )
    try:
        assert await engine.connect(start_polling=False)
        await engine.run_cycle()
        assert await engine.detect_protocol() == 7
    finally:
        await engine.close()

    assert engine.current_sample.protocol_number == 7
    assert presenter.samples[-1].protocol_name == "ISO 15765-4 CAN (29 bit ID, 500 kbaud)"


@pytest.mark.asyncio
async def test_send_test_sample(settings_factory, presenter) -> None:
    engine = TelemetryEngine(settings_factory(dry_run=True), presenter)
    await engine.start()
    try:
        sample = engine.send_test_sample()
        await engine.uploader.join()
    finally:
        await engine.close()

    assert sample.rpm == 1500.0
    assert presenter.samples[-1].speed == 60.0
    assert engine.uploader.last_outcome.success
