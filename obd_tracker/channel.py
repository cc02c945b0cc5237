"""Serialized command/response exchanges with an ELM327 adapter.

One command is outstanding at a time.  Each exchange appends ``\\r``,
writes the command, then accumulates reply bytes until the ``>``
prompt or a terminal keyword appears.  ``SEARCHING...`` (automatic
protocol detection) extends the wait up to a separate ceiling.
Retryable replies are re-sent after a fixed delay, up to a bound.

Bytes still buffered from an earlier exchange are dropped before each
write, and a late reply to another OBD request that shows up during an
exchange is discarded rather than returned.
"""

from __future__ import annotations

import asyncio
import re
import string
from enum import Enum
from typing import NamedTuple, Optional, Tuple

import structlog

from obd_tracker.config import TrackerSettings
from obd_tracker.errors import TransportError
from obd_tracker.transport.base import Transport

logger = structlog.get_logger(__name__)

TIMEOUT = "TIMEOUT"
SEARCHING_TIMEOUT = "SEARCHING_TIMEOUT"
NOT_CONNECTED = "NOT_CONNECTED"

_PROMPT = ">"
_PROMPT_GRACE = 0.5
_OBD_REPLY = re.compile(r"^4[1-9A][0-9A-F]*$")
_SEARCHING = "SEARCHING"
_TERMINAL_KEYWORDS = ("OK", "ERROR", "NO DATA", "BUS INIT")
_SEARCH_FAILURES = ("UNABLE TO CONNECT", "STOPPED", "BUS ERROR", "CAN ERROR")
_NO_VEHICLE = ("UNABLE TO CONNECT", "NO DATA")
_RETRY_MARKERS = (
    "BUS INIT",
    "ERROR",
    "TIMEOUT",
    "CAN ERROR",
    "BUFFER FULL",
    "WRITE_ERROR",
    "CHARACTERISTIC_NOT_WRITABLE",
)


class ResponseKind(str, Enum):
    COMPLETE = "complete"
    SEARCHING = "searching"
    ERROR = "error"
    PARTIAL = "partial"


class ResponseOutcome(NamedTuple):
    kind: ResponseKind
    text: str


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def clean_response(raw: str) -> str:
    """Normalise line endings, drop the prompt and surrounding whitespace."""
    return raw.replace("\r", "\n").replace(_PROMPT, "").strip()


def _searching_unresolved(text: str) -> bool:
    """``True`` if *text* ends in a ``SEARCHING`` line with nothing after it."""
    upper = text.upper()
    index = upper.rfind(_SEARCHING)
    if index < 0:
        return False
    rest = upper[index + len(_SEARCHING):]
    return rest.strip(". \r\n\t") == ""


def classify_response(buffer: str) -> ResponseOutcome:
    """Classify the bytes accumulated so far for one exchange."""
    text = clean_response(buffer)
    upper = buffer.upper()

    if _PROMPT in buffer:
        return ResponseOutcome(ResponseKind.COMPLETE, text)

    if _SEARCHING in upper and any(m in upper for m in _SEARCH_FAILURES):
        return ResponseOutcome(ResponseKind.ERROR, text)

    if any(k in upper for k in _TERMINAL_KEYWORDS):
        return ResponseOutcome(ResponseKind.COMPLETE, text)

    if _searching_unresolved(buffer):
        return ResponseOutcome(ResponseKind.SEARCHING, text)

    return ResponseOutcome(ResponseKind.PARTIAL, text)


def should_retry_command(response: str) -> bool:
    """Return ``True`` if *response* warrants sending the command again.

    ``SEARCHING`` together with ``UNABLE TO CONNECT``/``NO DATA`` means
    the adapter works but no vehicle answered; that is final.
    """
    clean = response.strip().upper()
    if not clean:
        return True

    if _SEARCHING in clean and any(m in clean for m in _NO_VEHICLE):
        return False

    if clean == "?" or _searching_unresolved(clean):
        return True

    return any(m in clean for m in _RETRY_MARKERS)


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------

class CommandChannel:
    """Runs command/response exchanges over a connected transport."""

    def __init__(self, transport: Transport, settings: TrackerSettings) -> None:
        self._transport = transport
        self._retries = settings.command_retries
        self._retry_delay = settings.retry_delay
        self._timeout_retry_delay = settings.timeout_retry_delay
        self._searching_timeout = settings.searching_timeout
        self._searching_poll = settings.searching_poll_interval
        self._lock = asyncio.Lock()

    @property
    def transport(self) -> Transport:
        return self._transport

    async def exchange(self, command: str, retries: Optional[int] = None) -> str:
        """Send *command* and return the cleaned reply text.

        Returns a sentinel (``TIMEOUT``, ``SEARCHING_TIMEOUT``,
        ``NOT_CONNECTED`` or ``WRITE_ERROR: ...``) instead of raising for
        adapter-level failures.

        Raises:
            TransportError: the link closed while waiting for the reply.
        """
        remaining = self._retries if retries is None else retries
        attempt = 0
        async with self._lock:
            while True:
                attempt += 1
                response, timed_out = await self._transact(command)
                if remaining <= 0 or not should_retry_command(response):
                    return response

                delay = self._timeout_retry_delay if timed_out else self._retry_delay
                logger.warning(
                    "command_retry",
                    command=command,
                    response=response,
                    attempt=attempt,
                    retries_left=remaining,
                    retry_in=delay,
                )
                remaining -= 1
                await asyncio.sleep(delay)

    async def _transact(self, command: str) -> Tuple[str, bool]:
        """One write/read round trip.  Returns ``(text, timed_out)``."""
        transport = self._transport
        if not transport.is_connected():
            logger.error("command_not_connected", command=command)
            return NOT_CONNECTED, False

        await transport.discard_pending()
        try:
            await transport.send(f"{command}\r".encode("ascii"))
        except TransportError as exc:
            logger.error("command_send_failed", command=command, error=str(exc))
            message = str(exc)
            if not message.startswith("WRITE_ERROR"):
                message = f"WRITE_ERROR: {message}"
            return message, False

        loop = asyncio.get_running_loop()
        started = loop.time()
        buffer = ""
        searching = False

        while True:
            ceiling = self._searching_timeout if searching else transport.response_timeout
            remaining = started + ceiling - loop.time()
            if remaining <= 0:
                if searching:
                    logger.warning(
                        "searching_timeout",
                        command=command,
                        seconds=self._searching_timeout,
                    )
                    return SEARCHING_TIMEOUT, True
                partial = clean_response(buffer)
                logger.warning("command_timeout", command=command, partial=partial)
                return partial or TIMEOUT, True

            wait = min(remaining, self._searching_poll) if searching else remaining
            try:
                chunk = await asyncio.wait_for(transport.receive(), timeout=wait)
            except asyncio.TimeoutError:
                continue
            if not chunk:
                raise TransportError(
                    f"adapter closed the link while waiting for '{command}'"
                )

            buffer += chunk.decode("utf-8", errors="ignore")
            buffer = _drop_stale_frames(command, buffer)
            outcome = classify_response(buffer)
            if outcome.kind in (ResponseKind.COMPLETE, ResponseKind.ERROR):
                if _PROMPT not in buffer:
                    # Keyword seen first; the prompt still belongs to this exchange.
                    buffer = await self._await_prompt(command, buffer, started + ceiling)
                text = clean_response(buffer.split(_PROMPT, 1)[0])
                if outcome.kind is ResponseKind.ERROR:
                    logger.warning("searching_failed", command=command, response=text)
                else:
                    logger.debug("command_response", command=command, response=text)
                return text, False
            if outcome.kind is ResponseKind.SEARCHING and not searching:
                searching = True
                logger.info("adapter_searching", command=command)

    async def _await_prompt(self, command: str, buffer: str, deadline: float) -> str:
        """Keep reading until ``>`` arrives, a short grace period passes or
        *deadline* is reached.  Returns the extended buffer."""
        loop = asyncio.get_running_loop()
        deadline = min(deadline, loop.time() + _PROMPT_GRACE)
        while _PROMPT not in buffer:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug("prompt_missing", command=command)
                break
            try:
                chunk = await asyncio.wait_for(self._transport.receive(), timeout=remaining)
            except asyncio.TimeoutError:
                break
            if not chunk:
                raise TransportError(
                    f"adapter closed the link while waiting for '{command}'"
                )
            buffer += chunk.decode("utf-8", errors="ignore")
        return buffer


def _expected_reply_prefix(command: str) -> Optional[str]:
    """``"010C"`` -> ``"410C"``, ``"03"`` -> ``"43"``; ``None`` for AT commands."""
    cmd = command.strip().upper()
    if len(cmd) < 2 or any(c not in string.hexdigits for c in cmd):
        return None
    return f"{int(cmd[:2], 16) + 0x40:02X}{cmd[2:4]}"


def is_stale_reply(command: str, text: str) -> bool:
    """``True`` if *text* is a positive OBD reply to some other request.

    Such a frame is the late answer to an earlier, timed-out command.
    """
    lines = ["".join(line.split()).upper() for line in text.split("\n")]
    replies = [line for line in lines if _OBD_REPLY.match(line)]
    if not replies:
        return False
    cmd = command.strip().upper()
    if cmd.startswith("AT"):
        return True
    expected = _expected_reply_prefix(cmd)
    if expected is None:
        return False
    return not any(line.startswith(expected) for line in replies)


def _drop_stale_frames(command: str, buffer: str) -> str:
    while _PROMPT in buffer:
        frame, rest = buffer.split(_PROMPT, 1)
        text = clean_response(frame)
        if not is_stale_reply(command, text):
            break
        logger.warning("stale_reply_discarded", command=command, response=text)
        buffer = rest
    return buffer
