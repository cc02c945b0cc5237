"""Per-cycle selection of which parameters to query.

Cycle numbers start at 1.  Cycle 1 queries everything; afterwards a
parameter with interval ``n`` is queried on every cycle divisible by
``n``.  Tiers: 1 (RPM, speed, ...), 2, 3, 4, 5 and 10 (OBD standard).
"""

from __future__ import annotations

from typing import Iterable, List

from obd_tracker.schemas import ParameterSpec

VOLTAGE_COMMAND = "ATRV"

PARAMETER_SPECS = (
    ParameterSpec(command="010C", label="Engine RPM", pid=0x0C, interval=1, field="rpm"),
    ParameterSpec(command="010D", label="Vehicle Speed", pid=0x0D, interval=1, field="speed"),
    ParameterSpec(command="0104", label="Engine Load", pid=0x04, interval=1, field="engine_load"),
    ParameterSpec(command="0111", label="Throttle Position", pid=0x11, interval=1, field="throttle_position"),
    ParameterSpec(command="0105", label="Coolant Temperature", pid=0x05, interval=2, field="coolant_temp"),
    ParameterSpec(command="010F", label="Intake Air Temperature", pid=0x0F, interval=2, field="intake_air_temp"),
    ParameterSpec(command="0110", label="MAF Rate", pid=0x10, interval=2, field="maf_rate"),
    ParameterSpec(command="012F", label="Fuel Level", pid=0x2F, interval=2, field="fuel_level"),
    ParameterSpec(command="0106", label="Short Term Fuel Trim - Bank 1", pid=0x06, interval=3, field="short_fuel_trim_1"),
    ParameterSpec(command="0107", label="Long Term Fuel Trim - Bank 1", pid=0x07, interval=3, field="long_fuel_trim_1"),
    ParameterSpec(command="0108", label="Short Term Fuel Trim - Bank 2", pid=0x08, interval=3, field="short_fuel_trim_2"),
    ParameterSpec(command="0109", label="Long Term Fuel Trim - Bank 2", pid=0x09, interval=3, field="long_fuel_trim_2"),
    ParameterSpec(command="015E", label="Engine Fuel Rate", pid=0x5E, interval=4, field="fuel_rate"),
    ParameterSpec(command="010A", label="Fuel Pressure", pid=0x0A, interval=4, field="fuel_pressure"),
    ParameterSpec(command="010E", label="Timing Advance", pid=0x0E, interval=5, field="timing_advance"),
    ParameterSpec(command="011F", label="Engine Runtime", pid=0x1F, interval=5, field="engine_runtime"),
    ParameterSpec(command="0146", label="Ambient Air Temperature", pid=0x46, interval=5, field="ambient_air_temp"),
    ParameterSpec(command="0145", label="Relative Throttle Position", pid=0x45, interval=5, field="relative_throttle_pos"),
    ParameterSpec(command="011C", label="OBD Standards", pid=0x1C, interval=10, field="obd_standard"),
)


def is_due(cycle: int, interval: int) -> bool:
    """Return ``True`` if something polled every *interval* cycles runs on *cycle*."""
    return cycle == 1 or cycle % interval == 0


def select_parameters(
    cycle: int,
    specs: Iterable[ParameterSpec] = PARAMETER_SPECS,
) -> List[ParameterSpec]:
    """Return the parameters to query on *cycle*, in table order."""
    return [spec for spec in specs if is_due(cycle, spec.interval)]


def should_detect_protocol(cycle: int, every: int = 10) -> bool:
    return is_due(cycle, every)


def should_check_dtcs(cycle: int, every: int = 5) -> bool:
    return is_due(cycle, every)
