"""ELM327 emulator and an in-process transport built on it.

Scenarios live in ``fixtures/simulation_scenarios.json``; each maps
adapter commands to reply text (``\\n`` separates reply lines) plus a
``default`` reply for anything unlisted.  The emulator frames replies
the way a real adapter does: ``\\r`` line endings and a trailing ``>``
prompt.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from obd_tracker.errors import TransportError
from obd_tracker.transport.base import Transport

_FIXTURES_DIR = Path(__file__).resolve().parent.parent / "fixtures"

Reply = Union[str, List[str]]


class ELM327Emulator:
    """Answers adapter commands from a scenario table.

    A reply given as a list is consumed one entry per request; the last
    entry then repeats.  ``sent`` records every command received.
    """

    def __init__(
        self,
        scenario: Optional[str] = "healthy",
        responses: Optional[Mapping[str, Reply]] = None,
        default: Optional[str] = None,
    ) -> None:
        table: Dict[str, Reply] = {}
        fallback = "?"
        if scenario is not None:
            scenarios = _load_scenarios()
            if scenario not in scenarios:
                available = ", ".join(sorted(scenarios))
                raise ValueError(
                    f"Unknown simulation scenario '{scenario}'. "
                    f"Available: {available}"
                )
            table.update(scenarios[scenario]["responses"])
            fallback = scenarios[scenario].get("default", fallback)
        if responses:
            table.update(responses)
        self._table = table
        self._default = default if default is not None else fallback
        self._served: Dict[str, int] = {}
        self.sent: List[str] = []

    def reply_text(self, command: str) -> str:
        command = command.strip().upper()
        self.sent.append(command)
        reply = self._table.get(command, self._default)
        if isinstance(reply, list):
            index = self._served.get(command, 0)
            self._served[command] = index + 1
            reply = reply[min(index, len(reply) - 1)]
        return reply

    def respond(self, command: str) -> bytes:
        """Return the framed wire reply for *command*."""
        text = self.reply_text(command)
        return (text.replace("\n", "\r") + "\r\r>").encode("ascii")


class SimulatedTransport(Transport):
    """Transport that routes commands to an ``ELM327Emulator``."""

    def __init__(
        self,
        emulator: Optional[ELM327Emulator] = None,
        *,
        kind: str = "wifi",
        response_timeout: float = 10.0,
        peer_name: Optional[str] = None,
        fail_connect: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.emulator = emulator or ELM327Emulator()
        self.kind = kind
        self.response_timeout = response_timeout
        self.peer_name = peer_name
        self._fail_connect = fail_connect
        self._connected = False
        self._replies: asyncio.Queue = asyncio.Queue()

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        if self._fail_connect:
            raise TransportError(self._fail_connect)
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    # -- I/O ----------------------------------------------------------------

    async def send(self, data: bytes) -> None:
        if not self._connected:
            raise TransportError("Simulated transport is not connected")
        command = data.decode("ascii").strip()
        self._replies.put_nowait(self.emulator.respond(command))

    async def receive(self) -> bytes:
        return await self._replies.get()

    async def discard_pending(self) -> None:
        while not self._replies.empty():
            self._replies.get_nowait()

    def drop_link(self, reason: str = "link dropped") -> None:
        """Simulate an unexpected disconnect."""
        self._connected = False
        self._replies.put_nowait(b"")
        self._notify_lost(reason)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_scenarios_cache: Optional[Dict[str, Any]] = None


def _load_scenarios() -> Dict[str, Any]:
    global _scenarios_cache
    if _scenarios_cache is None:
        path = _FIXTURES_DIR / "simulation_scenarios.json"
        with open(path, encoding="utf-8") as fh:
            _scenarios_cache = json.load(fh)
    return _scenarios_cache


def available_scenarios() -> List[str]:
    return sorted(_load_scenarios())
