"""Tests for the two-reader fan-out of a generation stream."""

import asyncio
import contextlib

import pytest

from talkback.errors import TransportError
from talkback.splitter import GenerationStreamSplitter


async def _source(chunks, error=None):
    for chunk in chunks:
        await asyncio.sleep(0)
        yield chunk
    if error is not None:
        raise error


async def _collect(stream, delay=0.0):
    out = []
    async for chunk in stream:
        out.append(chunk)
        if delay:
            await asyncio.sleep(delay)
    return b"".join(out)


@pytest.mark.asyncio
async def test_both_sides_see_the_whole_stream():
    chunks = [b"The ", b"quick ", b"brown ", b"fox"]
    splitter = GenerationStreamSplitter(_source(chunks))

    fast, slow = await asyncio.gather(
        _collect(splitter.transport()),
        _collect(splitter.history(), delay=0.01),
    )

    assert fast == slow == b"The quick brown fox"
    assert splitter.bytes_received == len(b"The quick brown fox")


@pytest.mark.asyncio
async def test_transport_abandoned_early_history_still_complete():
    splitter = GenerationStreamSplitter(_source([b"a", b"b", b"c", b"d"]))

    history = asyncio.create_task(splitter.drain_history())
    async with contextlib.aclosing(splitter.transport()) as transport:
        async for chunk in transport:
            assert chunk == b"a"
            break

    await asyncio.wait_for(splitter.transport_settled(), 1)
    result = await history
    assert result.text == "abcd"
    assert not result.truncated


@pytest.mark.asyncio
async def test_failure_mid_stream_gives_partial_text():
    splitter = GenerationStreamSplitter(
        _source([b"The answer", b" is"], error=TransportError("connection reset"))
    )

    received = []
    history = asyncio.create_task(splitter.drain_history())
    with pytest.raises(TransportError):
        async for chunk in splitter.transport():
            received.append(chunk)

    result = await history
    assert b"".join(received) == b"The answer is"
    assert result.text == "The answer is"
    assert result.truncated
    assert isinstance(result.error, TransportError)


@pytest.mark.asyncio
async def test_unexpected_error_is_wrapped():
    splitter = GenerationStreamSplitter(_source([b"x"], error=ValueError("boom")))

    result = await splitter.drain_history()

    assert result.text == "x"
    assert result.truncated
    assert isinstance(result.error.__cause__, ValueError)


@pytest.mark.asyncio
async def test_multibyte_character_split_across_chunks():
    encoded = "café ☕".encode("utf-8")
    chunks = [encoded[:4], encoded[4:7], encoded[7:]]
    splitter = GenerationStreamSplitter(_source(chunks))

    result = await splitter.drain_history()

    assert result.text == "café ☕"


@pytest.mark.asyncio
async def test_each_side_can_only_be_read_once():
    splitter = GenerationStreamSplitter(_source([b"once"]))
    assert await _collect(splitter.transport()) == b"once"

    with pytest.raises(RuntimeError):
        async for _ in splitter.transport():
            pass


@pytest.mark.asyncio
async def test_transport_settles_after_full_read():
    splitter = GenerationStreamSplitter(_source([b"x"]))

    assert await _collect(splitter.transport()) == b"x"
    await asyncio.wait_for(splitter.transport_settled(), 0.5)
    assert (await splitter.drain_history()).text == "x"
