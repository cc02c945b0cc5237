"""Tests for obd_tracker.channel -- framing, classification and retry."""

from __future__ import annotations

import asyncio
from typing import List, Sequence, Tuple

import pytest

from obd_tracker.channel import (
    NOT_CONNECTED,
    SEARCHING_TIMEOUT,
    TIMEOUT,
    CommandChannel,
    ResponseKind,
    classify_response,
    is_stale_reply,
    should_retry_command,
)
from obd_tracker.errors import TransportError
from obd_tracker.transport.base import Transport
from obd_tracker.transport.simulation import ELM327Emulator, SimulatedTransport


class ScriptedTransport(Transport):
    """Replies to each send with a scripted list of ``(delay, chunk)`` pairs."""

    def __init__(self, scripts: Sequence[Sequence[Tuple[float, bytes]]]) -> None:
        super().__init__()
        self.response_timeout = 0.3
        self._scripts = list(scripts)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self.sent: List[bytes] = []
        self.connected = True

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        for task in self._tasks:
            task.cancel()

    def is_connected(self) -> bool:
        return self.connected

    async def send(self, data: bytes) -> None:
        self.sent.append(data)
        script = self._scripts.pop(0) if self._scripts else []
        self._tasks.append(asyncio.create_task(self._play(script)))

    async def _play(self, script: Sequence[Tuple[float, bytes]]) -> None:
        for delay, chunk in script:
            await asyncio.sleep(delay)
            self._queue.put_nowait(chunk)

    async def receive(self) -> bytes:
        return await self._queue.get()

    async def discard_pending(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()


def _sim_channel(settings, responses, default="?"):
    emulator = ELM327Emulator(scenario=None, responses=responses, default=default)
    transport = SimulatedTransport(emulator, response_timeout=0.5)
    return emulator, transport, CommandChannel(transport, settings)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class TestClassifyResponse:
    def test_prompt_completes(self) -> None:
        outcome = classify_response("410C0FA0\r\r>")
        assert outcome.kind is ResponseKind.COMPLETE
        assert outcome.text == "410C0FA0"

    def test_error_keyword_completes(self) -> None:
        assert classify_response("ERROR").kind is ResponseKind.COMPLETE

    def test_ok_completes(self) -> None:
        assert classify_response("OK").kind is ResponseKind.COMPLETE

    def test_searching_then_unable_is_error(self) -> None:
        outcome = classify_response("SEARCHING...\rUNABLE TO CONNECT")
        assert outcome.kind is ResponseKind.ERROR

    def test_unresolved_searching(self) -> None:
        assert classify_response("SEARCHING...").kind is ResponseKind.SEARCHING

    def test_empty_is_partial(self) -> None:
        assert classify_response("").kind is ResponseKind.PARTIAL

    def test_partial_data(self) -> None:
        assert classify_response("410C0F").kind is ResponseKind.PARTIAL


class TestShouldRetry:
    @pytest.mark.parametrize(
        "response",
        ["", "?", "ERROR", "CAN ERROR", "BUS INIT...ERROR", "BUFFER FULL",
         "TIMEOUT", "SEARCHING...", "WRITE_ERROR: gone"],
    )
    def test_retryable(self, response: str) -> None:
        assert should_retry_command(response)

    @pytest.mark.parametrize(
        "response",
        ["410C0FA0", "OK", "NO DATA", "SEARCHING...\nUNABLE TO CONNECT",
         "SEARCHING...\nNO DATA", "SEARCHING...\n410C0FA0", "12.6V"],
    )
    def test_final(self, response: str) -> None:
        assert not should_retry_command(response)


# ---------------------------------------------------------------------------
# Exchanges
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_exchange_returns_clean_text(fast_settings) -> None:
    emulator, transport, channel = _sim_channel(fast_settings, {"010C": "410C0FA0"})
    await transport.connect()
    assert await channel.exchange("010C") == "410C0FA0"
    assert emulator.sent == ["010C"]


@pytest.mark.asyncio
async def test_exchange_retries_until_success(fast_settings) -> None:
    emulator, transport, channel = _sim_channel(
        fast_settings, {"ATRV": ["ERROR", "?", "12.4V"]}
    )
    await transport.connect()
    assert await channel.exchange("ATRV") == "12.4V"
    assert emulator.sent == ["ATRV", "ATRV", "ATRV"]


@pytest.mark.asyncio
async def test_exchange_retry_bound(fast_settings) -> None:
    emulator, transport, channel = _sim_channel(fast_settings, {}, default="?")
    await transport.connect()
    assert await channel.exchange("0100") == "?"
    # one attempt plus three retries
    assert len(emulator.sent) == 4


@pytest.mark.asyncio
async def test_exchange_no_retry_when_disabled(fast_settings) -> None:
    emulator, transport, channel = _sim_channel(fast_settings, {}, default="ERROR")
    await transport.connect()
    assert await channel.exchange("0100", retries=0) == "ERROR"
    assert emulator.sent == ["0100"]


@pytest.mark.asyncio
async def test_no_vehicle_is_not_retried(fast_settings) -> None:
    emulator, transport, channel = _sim_channel(
        fast_settings, {}, default="SEARCHING...\nUNABLE TO CONNECT"
    )
    await transport.connect()
    response = await channel.exchange("0100")
    assert "UNABLE TO CONNECT" in response
    assert emulator.sent == ["0100"]


@pytest.mark.asyncio
async def test_not_connected_sentinel(fast_settings) -> None:
    _, _transport, channel = _sim_channel(fast_settings, {})
    assert await channel.exchange("ATRV", retries=0) == NOT_CONNECTED


@pytest.mark.asyncio
async def test_timeout_returns_sentinel(fast_settings) -> None:
    transport = ScriptedTransport([[]])
    channel = CommandChannel(transport, fast_settings)
    assert await channel.exchange("ATRV", retries=0) == TIMEOUT
    await transport.disconnect()


@pytest.mark.asyncio
async def test_timeout_returns_partial_text(fast_settings) -> None:
    transport = ScriptedTransport([[(0.0, b"410C0F")]])
    channel = CommandChannel(transport, fast_settings)
    assert await channel.exchange("010C", retries=0) == "410C0F"
    await transport.disconnect()


@pytest.mark.asyncio
async def test_searching_extends_wait(fast_settings) -> None:
    # The data arrives after the normal 0.3 s reply timeout but inside
    # the 1 s searching ceiling.
    transport = ScriptedTransport(
        [[(0.0, b"SEARCHING..."), (0.5, b"\r4100BE3FA813\r\r>")]]
    )
    channel = CommandChannel(transport, fast_settings)
    response = await channel.exchange("0100", retries=0)
    assert "4100BE3FA813" in response
    await transport.disconnect()


@pytest.mark.asyncio
async def test_searching_ceiling(fast_settings) -> None:
    transport = ScriptedTransport([[(0.0, b"SEARCHING...")]])
    channel = CommandChannel(transport, fast_settings)
    assert await channel.exchange("0100", retries=0) == SEARCHING_TIMEOUT
    await transport.disconnect()


@pytest.mark.asyncio
async def test_chunked_reply_is_reassembled(fast_settings) -> None:
    transport = ScriptedTransport(
        [[(0.0, b"41 0C"), (0.01, b" 0F A0"), (0.01, b"\r\r>")]]
    )
    channel = CommandChannel(transport, fast_settings)
    assert await channel.exchange("010C", retries=0) == "41 0C 0F A0"
    assert transport.sent == [b"010C\r"]
    await transport.disconnect()


@pytest.mark.asyncio
async def test_link_closed_raises(fast_settings) -> None:
    transport = ScriptedTransport([[(0.0, b"")]])
    channel = CommandChannel(transport, fast_settings)
    with pytest.raises(TransportError):
        await channel.exchange("ATRV")
    await transport.disconnect()


@pytest.mark.asyncio
async def test_exchanges_are_serialized(fast_settings) -> None:
    transport = ScriptedTransport(
        [[(0.05, b"12.6V\r>")], [(0.0, b"410D3C\r>")]]
    )
    channel = CommandChannel(transport, fast_settings)
    first, second = await asyncio.gather(
        channel.exchange("ATRV", retries=0),
        channel.exchange("010D", retries=0),
    )
    assert first == "12.6V"
    assert second == "410D3C"
    await transport.disconnect()


@pytest.mark.asyncio
async def test_keyword_reply_consumes_trailing_prompt(fast_settings) -> None:
    # The prompt lags the keyword; it must not complete the next exchange.
    transport = ScriptedTransport(
        [[(0.0, b"NO DATA"), (0.02, b"\r\r>")], [(0.05, b"410D3C\r\r>")]]
    )
    channel = CommandChannel(transport, fast_settings)
    assert await channel.exchange("0105", retries=0) == "NO DATA"
    assert await channel.exchange("010D", retries=0) == "410D3C"
    await transport.disconnect()


@pytest.mark.asyncio
async def test_late_reply_to_earlier_command_is_skipped(fast_settings) -> None:
    transport = ScriptedTransport(
        [[], [(0.0, b"410C0FA0\r\r>"), (0.01, b"410D3C\r\r>")]]
    )
    channel = CommandChannel(transport, fast_settings)
    assert await channel.exchange("010C", retries=0) == TIMEOUT
    assert await channel.exchange("010D", retries=0) == "410D3C"
    await transport.disconnect()


@pytest.mark.asyncio
async def test_stale_and_fresh_reply_in_one_chunk(fast_settings) -> None:
    transport = ScriptedTransport([[(0.0, b"410C0FA0\r\r>12.6V\r\r>")]])
    channel = CommandChannel(transport, fast_settings)
    assert await channel.exchange("ATRV", retries=0) == "12.6V"
    await transport.disconnect()


class TestStaleReply:
    @pytest.mark.parametrize(
        "command, text",
        [("010D", "410C0FA0"), ("ATRV", "410C0FA0"), ("03", "410C0FA0")],
    )
    def test_reply_to_other_request(self, command: str, text: str) -> None:
        assert is_stale_reply(command, text)

    @pytest.mark.parametrize(
        "command, text",
        [
            ("010C", "410C0FA0"),
            ("010C", "41 0C 0F A0"),
            ("0100", "SEARCHING...\n4100BE3FA813"),
            ("03", "4301330000"),
            ("04", "44"),
            ("010D", "NO DATA"),
            ("ATRV", "12.6V"),
            ("ATDPN", "A6"),
        ],
    )
    def test_own_or_non_obd_reply(self, command: str, text: str) -> None:
        assert not is_stale_reply(command, text)
