"""Shared pytest fixtures for OBD tracker tests."""

from __future__ import annotations

from typing import Generator, List

import pytest

from obd_tracker.config import TrackerSettings
from obd_tracker.presenter import Presenter
from obd_tracker.schemas import ConnectionState, UploadOutcome, VehicleSample


def make_settings(**overrides) -> TrackerSettings:
    """Settings with every delay zeroed and short timeouts."""
    defaults = dict(
        obd_transport="sim",
        wifi_connect_timeout=1.0,
        wifi_handshake_timeout=1.0,
        wifi_response_timeout=0.5,
        ble_response_timeout=0.5,
        searching_timeout=1.0,
        searching_poll_interval=0.05,
        retry_delay=0.0,
        timeout_retry_delay=0.0,
        init_settle_seconds=0.0,
        init_long_settle_seconds=0.0,
        collection_interval_seconds=0.05,
        inter_command_delay=0.0,
        collector_host="127.0.0.1",
        collector_port=1,
        upload_max_attempts=3,
        upload_retry_delay=0.0,
        upload_connect_timeout=1.0,
        device_name="TESTCAR",
        dry_run=False,
    )
    defaults.update(overrides)
    return TrackerSettings(**defaults)


class RecordingPresenter(Presenter):
    """Presenter that keeps every update for assertions."""

    def __init__(self) -> None:
        self.states: List[ConnectionState] = []
        self.samples: List[VehicleSample] = []
        self.uploads: List[UploadOutcome] = []

    def on_connection_state(self, state: ConnectionState) -> None:
        self.states.append(state)

    def on_sample(self, sample: VehicleSample) -> None:
        self.samples.append(sample)

    def on_upload(self, outcome: UploadOutcome) -> None:
        self.uploads.append(outcome)


@pytest.fixture(autouse=True)
def _reset_scenario_cache() -> Generator[None, None, None]:
    """Clear the emulator scenario cache between tests."""
    from obd_tracker.transport import simulation

    simulation._scenarios_cache = None
    yield
    simulation._scenarios_cache = None


@pytest.fixture()
def settings_factory():
    """Return ``make_settings`` for tests that need overrides."""
    return make_settings


@pytest.fixture()
def fast_settings() -> TrackerSettings:
    return make_settings()


@pytest.fixture()
def presenter() -> RecordingPresenter:
    return RecordingPresenter()
