"""Adapter transport layer.

Provides the ``Transport`` ABC with three concrete implementations:

* ``WiFiTransport``       -- TCP to a WiFi adapter.
* ``BluetoothTransport``  -- BLE GATT via bleak (lazy-imported).
* ``SimulatedTransport``  -- in-process ELM327 emulator, no hardware.
"""

from __future__ import annotations

from obd_tracker.config import TrackerSettings
from obd_tracker.transport.base import Transport

__all__ = ["Transport", "create_transport"]


def create_transport(kind: str, settings: TrackerSettings) -> Transport:
    """Factory: return a fresh transport of *kind*.

    ``BluetoothTransport`` is imported lazily so WiFi and simulation
    modes work on hosts without a BLE stack.
    """
    if kind == "wifi":
        from obd_tracker.transport.wifi import WiFiTransport

        return WiFiTransport(settings)

    if kind == "bluetooth":
        from obd_tracker.transport.ble import BluetoothTransport

        return BluetoothTransport(settings)

    if kind == "sim":
        from obd_tracker.transport.simulation import (
            ELM327Emulator,
            SimulatedTransport,
        )

        return SimulatedTransport(
            ELM327Emulator(scenario=settings.obd_sim_scenario),
            response_timeout=settings.wifi_response_timeout,
        )

    raise ValueError(f"Unknown transport kind '{kind}'")
