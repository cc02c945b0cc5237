"""Brings a freshly connected ELM327 into a known configuration."""

from __future__ import annotations

import asyncio
from typing import NamedTuple, Optional, Tuple

import structlog

from obd_tracker.channel import TIMEOUT, CommandChannel
from obd_tracker.config import TrackerSettings
from obd_tracker.decoder import parse_voltage
from obd_tracker.errors import AdapterNotResponding
from obd_tracker.scheduler import VOLTAGE_COMMAND

logger = structlog.get_logger(__name__)

RESET_COMMAND = "ATZ"
AUTO_PROTOCOL_COMMAND = "ATSP0"

INIT_COMMANDS = (
    RESET_COMMAND,  # reset
    "ATE0",  # echo off
    "ATL0",  # linefeeds off
    "ATS0",  # spaces off
    "ATH0",  # headers off
    AUTO_PROTOCOL_COMMAND,  # automatic protocol search
    "0100",  # Mode 01 probe
)

# Both of these start an adapter-internal protocol search.
_LONG_SETTLE = {RESET_COMMAND, AUTO_PROTOCOL_COMMAND}


class InitResult(NamedTuple):
    reset_ok: bool
    voltage: Optional[float]
    vehicle_present: bool


def command_succeeded(response: str) -> bool:
    return bool(response) and "ERROR" not in response.upper() and response != TIMEOUT


class AdapterInitializer:
    """Runs the fixed init sequence, then a battery-voltage probe."""

    def __init__(self, channel: CommandChannel, settings: TrackerSettings) -> None:
        self._channel = channel
        self._settle = settings.init_settle_seconds
        self._long_settle = settings.init_long_settle_seconds

    async def run(self) -> InitResult:
        """Initialize the adapter.

        Raises:
            AdapterNotResponding: the voltage probe got neither a
                plausible voltage nor an explicit "no vehicle" reply.
        """
        logger.info("adapter_init_started", commands=len(INIT_COMMANDS))
        reset_ok = True

        for index, command in enumerate(INIT_COMMANDS, start=1):
            response = await self._channel.exchange(command)
            ok = command_succeeded(response)
            logger.debug(
                "adapter_init_command",
                step=index,
                total=len(INIT_COMMANDS),
                command=command,
                response=response,
                ok=ok,
            )
            if not ok:
                if command == RESET_COMMAND:
                    # Many clones report an error on reset yet keep working.
                    reset_ok = False
                else:
                    logger.warning(
                        "adapter_init_command_failed",
                        command=command,
                        response=response,
                    )

            delay = self._long_settle if command in _LONG_SETTLE else self._settle
            await asyncio.sleep(delay)

        logger.info("adapter_init_commands_complete", reset_ok=reset_ok)
        voltage, vehicle_present = await self.probe()
        return InitResult(reset_ok=reset_ok, voltage=voltage, vehicle_present=vehicle_present)

    async def probe(self) -> Tuple[Optional[float], bool]:
        """Basic connectivity check via ``ATRV``.

        Returns ``(voltage, vehicle_present)``.
        """
        response = await self._channel.exchange(VOLTAGE_COMMAND)
        voltage = parse_voltage(response)
        if voltage is not None:
            logger.info("adapter_probe_ok", voltage=voltage)
            return voltage, True
        if "UNABLE TO CONNECT" in response.upper():
            logger.warning("adapter_probe_no_vehicle", response=response)
            return None, False
        logger.error("adapter_probe_failed", response=response)
        raise AdapterNotResponding(f"ELM327 Not Responding (ATRV -> {response!r})")
