"""One collection cycle: voltage, protocol, PID sweep, DTCs, finalize.

Stages run strictly in sequence with one exchange in flight at a time:

    VoltageRead -> (ProtocolDetect)? -> ParameterSweep -> (DTCCheck)? -> Finalize

Protocol detection runs on cycle 1 and every 10th cycle, the DTC check
on cycle 1 and every 5th cycle (both configurable).
"""

from __future__ import annotations

import asyncio
from typing import Optional, Sequence

import structlog

from obd_tracker.channel import CommandChannel
from obd_tracker.config import TrackerSettings
from obd_tracker.decoder import (
    decode_dtc_response,
    decode_mil_status,
    decode_parameter,
    parse_protocol_number,
    parse_voltage,
    protocol_name,
)
from obd_tracker.errors import ProtocolError
from obd_tracker.scheduler import (
    PARAMETER_SPECS,
    VOLTAGE_COMMAND,
    select_parameters,
    should_check_dtcs,
    should_detect_protocol,
)
from obd_tracker.schemas import ParameterSpec, VehicleSample

logger = structlog.get_logger(__name__)

PROTOCOL_COMMAND = "ATDPN"
MIL_STATUS_COMMAND = "0101"
STORED_DTC_COMMAND = "03"


def _compact_raw(response: str) -> str:
    return " ".join(response.replace(",", " ").split())


class CollectionCycle:
    """Drives the per-cycle command sequence and builds the next sample."""

    def __init__(
        self,
        channel: CommandChannel,
        settings: TrackerSettings,
        parameters: Sequence[ParameterSpec] = PARAMETER_SPECS,
    ) -> None:
        self._channel = channel
        self._parameters = tuple(parameters)
        self._inter_command_delay = settings.inter_command_delay
        self._protocol_every = settings.protocol_detect_every
        self._dtc_every = settings.dtc_check_every
        self._cycle = 0

    @property
    def cycle(self) -> int:
        """Number of the most recently started cycle (0 before the first)."""
        return self._cycle

    async def run(self, previous: Optional[VehicleSample]) -> VehicleSample:
        """Run one cycle and return the new sample.

        Values not queried (or not decoded) this cycle are carried over
        from *previous*.  ``data_valid`` is set iff at least one value
        was decoded.
        """
        self._cycle += 1
        cycle = self._cycle
        sample = previous.seeded() if previous is not None else VehicleSample()
        logger.info("cycle_started", cycle=cycle)

        # -- voltage --------------------------------------------------------
        success = 0
        response = await self._channel.exchange(VOLTAGE_COMMAND)
        voltage = parse_voltage(response)
        if voltage is not None:
            sample.voltage = voltage
            success += 1
        else:
            logger.warning("voltage_read_failed", cycle=cycle, response=response)

        # -- protocol -------------------------------------------------------
        if should_detect_protocol(cycle, self._protocol_every):
            number = await self.detect_protocol()
            sample.protocol_number = number
            sample.protocol_name = protocol_name(number)

        # -- parameter sweep ------------------------------------------------
        due = select_parameters(cycle, self._parameters)
        for index, spec in enumerate(due, start=1):
            response = await self._channel.exchange(spec.command)
            try:
                value = decode_parameter(spec.pid, response)
            except ProtocolError as exc:
                logger.warning(
                    "parameter_decode_failed",
                    cycle=cycle,
                    parameter=spec.label,
                    command=spec.command,
                    error=str(exc),
                )
            else:
                setattr(sample, spec.field, value)
                success += 1
                logger.debug(
                    "parameter_read",
                    parameter=spec.label,
                    value=value,
                    step=index,
                    total=len(due),
                )
            await asyncio.sleep(self._inter_command_delay)

        # -- trouble codes --------------------------------------------------
        if should_check_dtcs(cycle, self._dtc_every):
            await self.check_trouble_codes(sample)

        # -- finalize -------------------------------------------------------
        sample.data_valid = success > 0
        sample.pids_read = success
        sample.pids_total = len(due) + 1
        logger.info(
            "cycle_complete",
            cycle=cycle,
            valid_parameters=success,
            scheduled=sample.pids_total,
            data_valid=sample.data_valid,
        )
        if sample.mil_on or sample.dtc_count > 0:
            logger.warning(
                "check_engine_light",
                mil_on=sample.mil_on,
                dtc_count=sample.dtc_count,
                codes=sample.dtc_codes,
            )
        return sample

    async def detect_protocol(self) -> int:
        response = await self._channel.exchange(PROTOCOL_COMMAND)
        number = parse_protocol_number(response)
        logger.info("protocol_detected", protocol=number, name=protocol_name(number))
        return number

    async def check_trouble_codes(self, sample: VehicleSample) -> None:
        """Update MIL state, DTC count and stored codes on *sample*."""
        response = await self._channel.exchange(MIL_STATUS_COMMAND)
        status = decode_mil_status(response)
        if status is not None:
            sample.mil_on, sample.dtc_count = status
            logger.info("mil_status", mil_on=sample.mil_on, dtc_count=sample.dtc_count)
        else:
            compact = "".join(response.split()).upper()
            if "NODATA" in compact or "ERROR" in compact:
                sample.mil_on = False
                sample.dtc_count = 0
            logger.warning("mil_status_unreadable", response=response)

        if not (sample.mil_on or sample.dtc_count > 0):
            sample.raw_dtc = ""
            sample.dtc_codes = []
            logger.info("no_trouble_codes")
            return

        response = await self._channel.exchange(STORED_DTC_COMMAND)
        if "NODATA" in "".join(response.split()).upper():
            sample.raw_dtc = ""
            sample.dtc_codes = []
            sample.dtc_count = 0
            logger.info("no_stored_trouble_codes")
            return

        sample.raw_dtc = _compact_raw(response)
        sample.dtc_codes = decode_dtc_response(response)
        logger.warning("trouble_codes_read", codes=sample.dtc_codes, raw=sample.raw_dtc)
