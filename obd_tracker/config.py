"""Tracker configuration via environment variables.

Uses pydantic-settings so every field can be overridden with an
env var.  ``env_prefix`` is empty, so field names map directly to env
vars (e.g. ``OBD_TRANSPORT``, ``COLLECTOR_HOST``).  List fields such as
``BLE_NAME_KEYWORDS`` are read as JSON arrays.

All delays are expressed in seconds and may be set to ``0`` (tests do
this to run whole collection cycles without waiting).
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

_TRANSPORTS = ("auto", "wifi", "bluetooth", "sim")

DEFAULT_BLE_KEYWORDS = [
    "ELM",
    "OBD",
    "V-LINK",
    "OBDII",
    "VEEPEAK",
    "KIWI",
    "BAFX",
    "BLUETOOTH",
    "SPP",
    "VIECAR",
]


class TrackerSettings(BaseSettings):
    """OBD Tracker runtime settings."""

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    # -- adapter transport --------------------------------------------------
    obd_transport: str = Field(
        default="auto",
        description="'auto' (WiFi then Bluetooth), 'wifi', 'bluetooth' or 'sim'",
    )
    obd_sim_scenario: str = Field(
        default="healthy",
        description="Emulator scenario name (from simulation_scenarios.json)",
    )
    obd_wifi_host: str = Field(default="192.168.0.10", description="WiFi adapter host")
    obd_wifi_port: int = Field(default=35000, description="WiFi adapter TCP port")
    wifi_connect_timeout: float = Field(
        default=10.0, description="Inner TCP connect timeout"
    )
    wifi_handshake_timeout: float = Field(
        default=15.0, description="Overall WiFi connection timeout"
    )

    # -- bluetooth LE -------------------------------------------------------
    ble_name_keywords: List[str] = Field(
        default_factory=lambda: list(DEFAULT_BLE_KEYWORDS),
        description="Case-insensitive name substrings identifying OBD adapters",
    )
    ble_rssi_threshold: int = Field(
        default=-80,
        description="Any named device stronger than this (dBm) is a fallback match",
    )
    ble_scan_timeout: float = Field(default=30.0, description="BLE scan duration")
    ble_connect_timeout: float = Field(
        default=15.0, description="Connect + GATT discovery timeout"
    )

    # -- command channel ----------------------------------------------------
    wifi_response_timeout: float = Field(default=10.0)
    ble_response_timeout: float = Field(default=30.0)
    searching_timeout: float = Field(
        default=30.0, description="Ceiling for 'SEARCHING...' protocol detection"
    )
    searching_poll_interval: float = Field(default=1.0)
    command_retries: int = Field(default=3, description="Retries per command")
    retry_delay: float = Field(
        default=5.0, description="Delay before retrying a retryable response"
    )
    timeout_retry_delay: float = Field(
        default=2.0, description="Delay before retrying after a hard timeout"
    )

    # -- adapter initialization ---------------------------------------------
    init_settle_seconds: float = Field(default=1.0)
    init_long_settle_seconds: float = Field(
        default=15.0, description="Settle delay after reset and auto-protocol"
    )

    # -- collection cycle ---------------------------------------------------
    collection_interval_seconds: float = Field(
        default=30.0, description="Seconds between collection cycles"
    )
    inter_command_delay: float = Field(
        default=0.5, description="Spacing between PID queries in a sweep"
    )
    protocol_detect_every: int = Field(default=10)
    dtc_check_every: int = Field(default=5)

    # -- collector upload ---------------------------------------------------
    collector_host: str = Field(default="127.0.0.1", description="Collector host")
    collector_port: int = Field(default=8090, description="Collector TCP port")
    upload_max_attempts: int = Field(default=3)
    upload_retry_delay: float = Field(default=5.0)
    upload_connect_timeout: float = Field(default=15.0)
    upload_queue_max: int = Field(
        default=100, description="Max formatted lines waiting for upload"
    )
    dry_run: bool = Field(
        default=False,
        description="Format upload lines and log them; never open a socket",
    )

    # -- identity / location ------------------------------------------------
    device_name: str = Field(
        default="", description="Device name sent to the collector"
    )
    device_name_prefix: str = Field(
        default="TRACKER",
        description="Prefix for the host-derived fallback device name",
    )
    latitude: Optional[float] = Field(default=None)
    longitude: Optional[float] = Field(default=None)

    # -- logging ------------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="console",
        description="Log output format: 'console' or 'json'",
    )

    # --- validators --------------------------------------------------------

    @field_validator("obd_transport")
    @classmethod
    def validate_transport(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in _TRANSPORTS:
            raise ValueError(
                f"obd_transport must be one of {', '.join(_TRANSPORTS)}, got '{v}'"
            )
        return v

    # -- derived ------------------------------------------------------------
    @property
    def is_simulation(self) -> bool:
        """Return ``True`` when the emulator stands in for a real adapter."""
        return self.obd_transport == "sim"

    @property
    def transport_order(self) -> List[str]:
        """Transports to try, in order, on ``connect()``."""
        if self.obd_transport == "auto":
            return ["wifi", "bluetooth"]
        return [self.obd_transport]
