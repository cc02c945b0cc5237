"""Pydantic v2 models shared across the engine."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

_DTC_PATTERN = re.compile(r"^[PCBU][0-9A-F]{4}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Static parameter table entries
# ---------------------------------------------------------------------------

class ParameterSpec(BaseModel):
    """One scheduled Mode 01 query.

    ``interval`` is in collection-cycle units: the parameter is queried
    on cycle 1 and on every cycle divisible by ``interval``.
    """

    model_config = {"frozen": True}

    command: str = Field(..., description="Adapter command, e.g. '010C'")
    label: str = Field(..., description="Human-readable name")
    pid: int = Field(..., ge=0, le=0xFF)
    interval: int = Field(..., ge=1)
    field: str = Field(..., description="VehicleSample attribute to update")


# ---------------------------------------------------------------------------
# Connection state
# ---------------------------------------------------------------------------

class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED_WIFI = "connected_wifi"
    CONNECTED_BLUETOOTH = "connected_bluetooth"
    FAILED = "failed"


class ConnectionState(BaseModel):
    """Presenter-visible connectivity.  Replaced, never mutated."""

    model_config = {"frozen": True}

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reason: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.status in (
            ConnectionStatus.CONNECTED_WIFI,
            ConnectionStatus.CONNECTED_BLUETOOTH,
        )

    def describe(self) -> str:
        labels = {
            ConnectionStatus.DISCONNECTED: "Disconnected",
            ConnectionStatus.CONNECTING: "Connecting...",
            ConnectionStatus.CONNECTED_WIFI: "Connected (WiFi)",
            ConnectionStatus.CONNECTED_BLUETOOTH: "Connected (Bluetooth)",
            ConnectionStatus.FAILED: "Failed",
        }
        label = labels[self.status]
        if self.reason:
            return f"{label}: {self.reason}"
        return label


# ---------------------------------------------------------------------------
# Vehicle sample
# ---------------------------------------------------------------------------

class VehicleSample(BaseModel):
    """Current-state snapshot produced by one collection cycle.

    A new sample is seeded from the previous one each cycle so that
    parameters not queried this cycle keep their last known value.
    """

    rpm: float = 0.0
    speed: float = Field(default=0.0, description="km/h")
    engine_load: float = Field(default=0.0, description="percent")
    throttle_position: float = Field(default=0.0, description="percent")
    coolant_temp: float = Field(default=0.0, description="degC")
    intake_air_temp: float = Field(default=0.0, description="degC")
    ambient_air_temp: float = Field(default=0.0, description="degC")
    voltage: float = Field(default=0.0, description="volt")
    maf_rate: float = Field(default=0.0, description="g/s")
    fuel_level: float = Field(default=0.0, description="percent")
    short_fuel_trim_1: float = 0.0
    long_fuel_trim_1: float = 0.0
    short_fuel_trim_2: float = 0.0
    long_fuel_trim_2: float = 0.0
    fuel_pressure: float = Field(default=0.0, description="kPa")
    timing_advance: float = Field(default=0.0, description="degree")
    engine_runtime: int = Field(default=0, description="second")
    fuel_rate: float = Field(default=0.0, description="L/h")
    relative_throttle_pos: float = Field(default=0.0, description="percent")
    obd_standard: str = ""

    data_valid: bool = False
    mil_on: bool = False
    dtc_count: int = 0
    raw_dtc: str = ""
    dtc_codes: List[str] = Field(default_factory=list)

    protocol_number: int = Field(default=6, description="ELM327 protocol 1-10")
    protocol_name: str = ""

    pids_read: int = Field(default=0, description="Successful decodes this cycle")
    pids_total: int = Field(default=0, description="Queries scheduled this cycle")

    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("dtc_codes")
    @classmethod
    def validate_dtc_codes(cls, v: List[str]) -> List[str]:
        for code in v:
            if not _DTC_PATTERN.match(code):
                raise ValueError(
                    f"DTC code must match ^[PCBU][0-9A-F]{{4}}$, got '{code}'"
                )
        return v

    def seeded(self) -> "VehicleSample":
        """Return a copy to be filled in by the next cycle."""
        return self.model_copy(
            deep=True,
            update={
                "data_valid": False,
                "pids_read": 0,
                "pids_total": 0,
                "timestamp": _utcnow(),
            },
        )


# ---------------------------------------------------------------------------
# Location / upload outcome
# ---------------------------------------------------------------------------

class Location(BaseModel):
    latitude: float
    longitude: float


class UploadOutcome(BaseModel):
    """Result of one upload (or of one failed attempt while retrying)."""

    success: bool
    status: str = Field(..., description="Presenter-facing status string")
    attempts: int = 0
    final: bool = True
    ts: datetime = Field(default_factory=_utcnow)
