"""Tests for obd_tracker.config -- env-driven settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from obd_tracker.config import DEFAULT_BLE_KEYWORDS, TrackerSettings


def test_defaults(monkeypatch) -> None:
    monkeypatch.delenv("OBD_TRANSPORT", raising=False)
    settings = TrackerSettings(_env_file=None)
    assert settings.obd_transport == "auto"
    assert settings.obd_wifi_host == "192.168.0.10"
    assert settings.obd_wifi_port == 35000
    assert settings.collection_interval_seconds == 30.0
    assert settings.upload_max_attempts == 3
    assert settings.ble_rssi_threshold == -80
    assert settings.ble_name_keywords == DEFAULT_BLE_KEYWORDS


def test_transport_order() -> None:
    assert TrackerSettings(obd_transport="auto").transport_order == ["wifi", "bluetooth"]
    assert TrackerSettings(obd_transport="bluetooth").transport_order == ["bluetooth"]


def test_transport_case_insensitive() -> None:
    settings = TrackerSettings(obd_transport="SIM")
    assert settings.obd_transport == "sim"
    assert settings.is_simulation


def test_unknown_transport_rejected() -> None:
    with pytest.raises(ValidationError, match="obd_transport"):
        TrackerSettings(obd_transport="serial")


def test_env_override(monkeypatch) -> None:
    monkeypatch.setenv("COLLECTOR_HOST", "10.0.0.5")
    monkeypatch.setenv("COLLECTOR_PORT", "9000")
    monkeypatch.setenv("BLE_NAME_KEYWORDS", '["VLINK"]')
    settings = TrackerSettings(_env_file=None)
    assert settings.collector_host == "10.0.0.5"
    assert settings.collector_port == 9000
    assert settings.ble_name_keywords == ["VLINK"]
