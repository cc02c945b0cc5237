"""Turns raw ELM327 reply text into typed parameter values.

Mode 01 replies look like ``41`` + PID + data bytes, e.g. ``410C0FA0``
for RPM.  Matching is tolerant of spaces, echoed commands and noise
lines: the expected prefix is searched anywhere in the reply first,
then line by line.

Conversions follow SAE J1979.  ``decode_parameter`` raises
``ProtocolError`` when a value cannot be extracted; callers treat that
as "no value this cycle".
"""

from __future__ import annotations

import string
from typing import Callable, Dict, List, Optional, Tuple, Union

import structlog

from obd_tracker.errors import ProtocolError

logger = structlog.get_logger(__name__)

ParameterValue = Union[float, int, str]

_AMBIENT_MIN_C = -50.0
_AMBIENT_MAX_C = 60.0
_VOLTAGE_MIN = 5.0
_VOLTAGE_MAX = 20.0
DEFAULT_PROTOCOL = 6

OBD_STANDARDS: Dict[int, str] = {
    0x01: "OBD-II",
    0x02: "OBD",
    0x03: "OBD_OBD-II",
    0x04: "OBD-I",
    0x05: "NONE",
    0x06: "EOBD",
    0x07: "EOBD_OBD-II",
    0x08: "EOBD_OBD",
    0x09: "EOBD_OBD_OBD-II",
    0x0A: "JOBD",
    0x0B: "JOBD_OBD-II",
    0x0C: "JOBD_EOBD",
    0x0D: "JOBD_EOBD_OBD-II",
}

PROTOCOL_NAMES: Dict[int, str] = {
    1: "SAE J1850 PWM (41.6 kbaud)",
    2: "SAE J1850 VPW (10.4 kbaud)",
    3: "ISO 9141-2 (5 baud init)",
    4: "ISO 14230-4 KWP (5 baud init)",
    5: "ISO 14230-4 KWP (fast init)",
    6: "ISO 15765-4 CAN (11 bit ID, 500 kbaud)",
    7: "ISO 15765-4 CAN (29 bit ID, 500 kbaud)",
    8: "ISO 15765-4 CAN (11 bit ID, 250 kbaud)",
    9: "ISO 15765-4 CAN (29 bit ID, 250 kbaud)",
    10: "SAE J1939 CAN (29 bit ID, 250 kbaud)",
}

_DTC_SYSTEMS = ("P", "C", "B", "U")


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------

def _percent(v: int) -> float:
    return v * 100.0 / 255.0


def _temperature(v: int) -> float:
    return v - 40.0


def _fuel_trim(v: int) -> float:
    return max(-100.0, min(100.0, (v - 128) * 100.0 / 128.0))


def _ambient(v: int) -> float:
    temp = v - 40.0
    if not _AMBIENT_MIN_C <= temp <= _AMBIENT_MAX_C:
        raise ProtocolError(f"ambient air temperature out of range: {temp}")
    return temp


def obd_standard_name(value: int) -> str:
    return OBD_STANDARDS.get(value, "UNKNOWN")


def protocol_name(number: int) -> str:
    return PROTOCOL_NAMES.get(number, f"Unknown Protocol {number}")


# pid -> (data bytes, conversion)
_PID_TABLE: Dict[int, Tuple[int, Callable[[int], ParameterValue]]] = {
    0x0C: (2, lambda v: v / 4.0),
    0x0D: (1, float),
    0x04: (1, _percent),
    0x11: (1, _percent),
    0x45: (1, _percent),
    0x2F: (1, _percent),
    0x05: (1, _temperature),
    0x0F: (1, _temperature),
    0x10: (2, lambda v: v / 100.0),
    0x06: (1, _fuel_trim),
    0x07: (1, _fuel_trim),
    0x08: (1, _fuel_trim),
    0x09: (1, _fuel_trim),
    0x5E: (2, lambda v: v / 20.0),
    0x0A: (1, lambda v: v * 3.0),
    0x0E: (1, lambda v: (v - 128) / 2.0),
    0x1F: (2, int),
    0x46: (1, _ambient),
    0x1C: (1, obd_standard_name),
}


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def _compact(text: str) -> str:
    """Uppercase and drop spaces/tabs, keeping line structure."""
    lines = text.replace("\r", "\n").upper().split("\n")
    return "\n".join("".join(line.split()) for line in lines)


def _hex_int(text: str) -> Optional[int]:
    # int(x, 16) also takes signs, underscores and a 0x prefix.
    if not text or any(c not in string.hexdigits for c in text):
        return None
    return int(text, 16)


def extract_pid_value(response: str, pid: int, n_bytes: int) -> Optional[int]:
    """Return the raw integer carried by a ``41<pid>`` reply, or ``None``."""
    clean = _compact(response)
    prefix = f"41{pid:02X}"
    width = n_bytes * 2

    # Prefix anywhere in the buffer.
    start = clean.find(prefix)
    if start >= 0:
        data = clean[start + len(prefix):start + len(prefix) + width]
        if len(data) == width:
            value = _hex_int(data)
            if value is not None:
                return value

    # Prefix at the start of some line (echo or noise before it).
    for line in clean.split("\n"):
        if line.startswith(prefix) and len(line) >= len(prefix) + width:
            value = _hex_int(line[len(prefix):len(prefix) + width])
            if value is not None:
                return value

    return None


def decode_parameter(pid: int, response: str) -> ParameterValue:
    """Decode the Mode 01 reply for *pid*.

    Raises:
        ProtocolError: unknown PID, prefix absent, too few data bytes,
            or a value outside its plausible range.
    """
    try:
        n_bytes, convert = _PID_TABLE[pid]
    except KeyError:
        raise ProtocolError(f"unsupported PID 0x{pid:02X}") from None

    raw = extract_pid_value(response, pid, n_bytes)
    if raw is None:
        raise ProtocolError(
            f"PID 0x{pid:02X} not found in response {response.strip()!r}"
        )
    return convert(raw)


def parse_voltage(response: str) -> Optional[float]:
    """Parse an ``ATRV`` reply such as ``12.6V``.

    Returns the first whitespace-delimited number in (5, 20) volts.
    """
    clean = response.replace("V", " ").replace("v", " ")
    for token in clean.split():
        try:
            voltage = float(token)
        except ValueError:
            continue
        if _VOLTAGE_MIN < voltage < _VOLTAGE_MAX:
            return voltage
    return None


# ---------------------------------------------------------------------------
# MIL / DTCs
# ---------------------------------------------------------------------------

def decode_mil_status(response: str) -> Optional[Tuple[bool, int]]:
    """Decode a ``0101`` reply into ``(mil_on, dtc_count)``."""
    first = extract_pid_value(response, 0x01, 1)
    if first is None:
        return None
    return bool(first & 0x80), first & 0x7F


def dtc_from_hex(code_hex: str) -> Optional[str]:
    """Convert 4 hex digits into a DTC like ``P0301``.

    The top two bits select the system letter.  ``0000`` is padding and
    yields ``None``, as does anything that is not 4 hex digits.
    """
    if len(code_hex) != 4:
        return None
    value = _hex_int(code_hex)
    if value is None:
        logger.warning("dtc_hex_invalid", code_hex=code_hex)
        return None
    if value == 0:
        return None
    system = _DTC_SYSTEMS[(value >> 14) & 0x03]
    return f"{system}{value & 0x3FFF:04X}"


def decode_dtc_response(response: str) -> List[str]:
    """Decode a Mode 03 reply (``43`` + 4-hex-digit codes per line)."""
    codes: List[str] = []
    for line in _compact(response).split("\n"):
        if not line.startswith("43"):
            continue
        payload = line[2:]
        for i in range(0, len(payload) - 3, 4):
            code = dtc_from_hex(payload[i:i + 4])
            if code is not None:
                codes.append(code)
    return codes


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

def parse_protocol_number(response: str) -> int:
    """Parse an ``ATDPN`` reply into a protocol number 1-10.

    The adapter prefixes ``A`` when the protocol was found by automatic
    search (``A6`` means protocol 6).  ``A`` on its own is protocol 10.
    Anything unparseable falls back to 6 (11-bit CAN, 500 kbaud).
    """
    text = "".join(response.split()).upper()
    if text in ("A", "A0", "0A"):
        return 10
    if len(text) == 2 and text.startswith("A"):
        text = text[1:]
    if text == "A":
        return 10
    if text.isdigit() and 1 <= int(text) <= 10:
        return int(text)
    logger.warning(
        "protocol_unknown",
        response=response.strip(),
        default=DEFAULT_PROTOCOL,
    )
    return DEFAULT_PROTOCOL
