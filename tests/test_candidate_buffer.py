"""Tests for the candidate buffer."""

import asyncio

import pytest

from duo_rtc.client.candidate_buffer import CandidateBuffer


@pytest.mark.asyncio
async def test_drain_applies_in_insertion_order():
    buffer = CandidateBuffer(peer_id="b1")
    for name in ("c1", "c2", "c3"):
        buffer.append(name)
    applied = []

    async def apply(payload):
        applied.append(payload)

    assert await buffer.drain(apply) == 3
    assert applied == ["c1", "c2", "c3"]
    assert len(buffer) == 0
    assert buffer.total_buffered == 3
    assert buffer.total_drained == 3


@pytest.mark.asyncio
async def test_entries_appended_during_drain_are_applied():
    buffer = CandidateBuffer()
    buffer.append("c1")
    buffer.append("c2")
    applied = []

    async def apply(payload):
        applied.append(payload)
        if payload == "c1":
            buffer.append("c3")
        await asyncio.sleep(0)

    assert await buffer.drain(apply) == 3
    assert applied == ["c1", "c2", "c3"]


@pytest.mark.asyncio
async def test_failing_apply_does_not_retry_entry():
    buffer = CandidateBuffer()
    buffer.append("bad")
    buffer.append("good")

    async def apply(payload):
        if payload == "bad":
            raise RuntimeError("rejected")

    with pytest.raises(RuntimeError):
        await buffer.drain(apply)
    assert list(buffer) == ["good"]


@pytest.mark.asyncio
async def test_drain_empty_buffer():
    buffer = CandidateBuffer()

    async def apply(payload):
        raise AssertionError("nothing to apply")

    assert await buffer.drain(apply) == 0


def test_clear_reports_dropped_entries():
    buffer = CandidateBuffer()
    buffer.append("c1")
    buffer.append("c2")

    assert buffer.clear() == 2
    assert len(buffer) == 0
    assert buffer.clear() == 0
