"""Collaborator interfaces the engine pushes to or reads from.

``Presenter`` receives connection-state changes, each new sample and
upload outcomes.  ``LocationProvider`` supplies the last known fix.
Default implementations log (presenter) or return a fixed/absent
location, so the engine runs headless without a UI.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import structlog

from obd_tracker.schemas import ConnectionState, Location, UploadOutcome, VehicleSample

logger = structlog.get_logger(__name__)


class Presenter(ABC):
    """Push-only sink for engine status."""

    @abstractmethod
    def on_connection_state(self, state: ConnectionState) -> None:
        """Connectivity changed."""

    @abstractmethod
    def on_sample(self, sample: VehicleSample) -> None:
        """A new current sample replaced the previous one."""

    @abstractmethod
    def on_upload(self, outcome: UploadOutcome) -> None:
        """An upload finished, failed, or is being retried."""


class LoggingPresenter(Presenter):
    """Presenter for headless runs: every update becomes a log entry."""

    def on_connection_state(self, state: ConnectionState) -> None:
        logger.info("status_connection", status=state.describe())

    def on_sample(self, sample: VehicleSample) -> None:
        logger.info(
            "status_sample",
            rpm=sample.rpm,
            speed=sample.speed,
            coolant_temp=sample.coolant_temp,
            voltage=sample.voltage,
            data_valid=sample.data_valid,
            mil_on=sample.mil_on,
            dtc_count=sample.dtc_count,
        )

    def on_upload(self, outcome: UploadOutcome) -> None:
        logger.info("status_upload", status=outcome.status, success=outcome.success)


class LocationProvider(ABC):
    @abstractmethod
    def current_location(self) -> Optional[Location]:
        """Return the last known fix, or ``None``."""


class FixedLocationProvider(LocationProvider):
    """Returns a configured position, or ``None`` when not configured."""

    def __init__(
        self,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> None:
        self._location: Optional[Location] = None
        if latitude is not None and longitude is not None:
            self._location = Location(latitude=latitude, longitude=longitude)

    def current_location(self) -> Optional[Location]:
        return self._location
