"""
Unit tests for the Stream Correlator

Tests cover:
- decode_frame() on result, progress and junk lines
- Lines split across chunks
- One resolution per task; unsolicited results dropped
- Stream close rejects the pending task
- Timeout, then the late result is discarded
"""

import asyncio
from unittest.mock import Mock

import pytest

from errors import TaskTimeout, WorkerClosedUnexpectedly
from stream_correlator import (
    ProgressFrame,
    ResultFrame,
    StreamCorrelator,
    UnknownFrame,
    decode_frame,
    ends_turn,
    result_text,
)


# =============================================================================
# decode_frame
# =============================================================================

class TestDecodeFrame:

    def test_result_frame(self):
        assert decode_frame('{"type":"result","result":"OK"}') == ResultFrame("OK")

    def test_result_with_extra_fields(self):
        frame = decode_frame('{"type":"result","subtype":"success","result":"x","cost_usd":0.1}')
        assert frame == ResultFrame("x")

    def test_result_type_without_result_field(self):
        frame = decode_frame('{"type":"result"}')
        assert isinstance(frame, ProgressFrame)
        assert frame.kind == "result"

    def test_null_result_is_a_result(self):
        assert decode_frame('{"type":"result","result":null}') == ResultFrame(None)

    def test_progress_frame(self):
        frame = decode_frame('{"type":"assistant","message":{}}')
        assert isinstance(frame, ProgressFrame)
        assert frame.kind == "assistant"

    @pytest.mark.parametrize("line", [
        "plain text",
        "{not json",
        "[1, 2, 3]",
        '"a string"',
        '{"no_type": true}',
        '{"type": 5}',
    ])
    def test_unknown_frames(self, line):
        assert decode_frame(line) == UnknownFrame(line)

    def test_result_text(self):
        assert result_text("hi") == "hi"
        assert result_text(None) == "null"
        assert result_text({"a": 1}) == '{"a": 1}'


# =============================================================================
# StreamCorrelator
# =============================================================================

class TestStreamCorrelator:

    @pytest.mark.asyncio
    async def test_resolves_on_result_line(self):
        correlator = StreamCorrelator("reviewer")
        pending = correlator.begin("reviewer", "task", timeout=1.0)

        correlator.feed('{"type":"assistant"}\nnoise\n{"type":"result","result":"OK"}\n')

        assert await correlator.wait(pending) == "OK"
        assert correlator.pending is None
        assert correlator.frames_discarded == 2

    @pytest.mark.asyncio
    async def test_line_split_across_chunks(self):
        correlator = StreamCorrelator("reviewer")
        pending = correlator.begin("reviewer", "task", timeout=1.0)

        correlator.feed('{"type":"res')
        assert not pending.done
        assert correlator.buffer == '{"type":"res'

        correlator.feed('ult","result":"OK"}\n')
        assert await correlator.wait(pending) == "OK"
        assert correlator.buffer == ""

    @pytest.mark.asyncio
    async def test_progress_then_result_split_mid_line(self):
        correlator = StreamCorrelator("reviewer")
        pending = correlator.begin("reviewer", "task", timeout=1.0)

        frames = correlator.feed('{"type":"progress","step":1}\n{"type":"result","re')
        assert frames == [ProgressFrame("progress")]
        assert not pending.done

        correlator.feed('sult":"OK"}\n')
        assert await correlator.wait(pending) == "OK"

    @pytest.mark.asyncio
    async def test_junk_only_does_not_resolve(self):
        correlator = StreamCorrelator("reviewer")
        pending = correlator.begin("reviewer", "task", timeout=1.0)

        frames = correlator.feed("hello\n\n[1]\n{}\n")

        assert len(frames) == 3
        assert not pending.done

    @pytest.mark.asyncio
    async def test_second_result_is_not_delivered(self):
        on_result = Mock()
        correlator = StreamCorrelator("reviewer", on_result=on_result)
        pending = correlator.begin("reviewer", "task", timeout=1.0)

        correlator.feed('{"type":"result","result":"first"}\n{"type":"result","result":"second"}\n')

        assert await correlator.wait(pending) == "first"
        on_result.assert_called_once_with(pending, "first")
        assert correlator.frames_discarded == 1

    def test_unsolicited_result_discarded(self):
        on_result = Mock()
        correlator = StreamCorrelator("reviewer", on_result=on_result)

        correlator.feed('{"type":"result","result":"stray"}\n')

        on_result.assert_not_called()
        assert correlator.frames_discarded == 1

    @pytest.mark.asyncio
    async def test_on_result_runs_before_caller_resumes(self):
        order = []
        correlator = StreamCorrelator("reviewer", on_result=lambda p, t: order.append("callback"))
        pending = correlator.begin("reviewer", "task", timeout=1.0)

        correlator.feed('{"type":"result","result":"OK"}\n')
        await correlator.wait(pending)
        order.append("caller")

        assert order == ["callback", "caller"]

    @pytest.mark.asyncio
    async def test_callback_error_does_not_lose_result(self):
        correlator = StreamCorrelator("reviewer", on_result=Mock(side_effect=RuntimeError("boom")))
        pending = correlator.begin("reviewer", "task", timeout=1.0)

        correlator.feed('{"type":"result","result":"OK"}\n')
        assert await correlator.wait(pending) == "OK"

    @pytest.mark.asyncio
    async def test_close_rejects_pending(self):
        correlator = StreamCorrelator("reviewer")
        pending = correlator.begin("reviewer", "task", timeout=1.0)

        correlator.close()

        with pytest.raises(WorkerClosedUnexpectedly):
            await correlator.wait(pending)
        assert correlator.closed

    @pytest.mark.asyncio
    async def test_close_flushes_final_line(self):
        correlator = StreamCorrelator("reviewer")
        pending = correlator.begin("reviewer", "task", timeout=1.0)

        correlator.feed('{"type":"result","result":"tail"}')
        correlator.close()

        assert await correlator.wait(pending) == "tail"

    @pytest.mark.asyncio
    async def test_begin_after_close_fails(self):
        correlator = StreamCorrelator("reviewer")
        correlator.close()
        with pytest.raises(WorkerClosedUnexpectedly):
            correlator.begin("reviewer", "task", timeout=1.0)

    @pytest.mark.asyncio
    async def test_begin_twice_rejected(self):
        correlator = StreamCorrelator("reviewer")
        correlator.begin("reviewer", "one", timeout=1.0)
        with pytest.raises(RuntimeError):
            correlator.begin("reviewer", "two", timeout=1.0)

    @pytest.mark.asyncio
    async def test_fail_rejects_with_given_error(self):
        correlator = StreamCorrelator("reviewer")
        pending = correlator.begin("reviewer", "task", timeout=1.0)

        correlator.fail(WorkerClosedUnexpectedly("pipe broke"))

        with pytest.raises(WorkerClosedUnexpectedly, match="pipe broke"):
            await correlator.wait(pending)

    @pytest.mark.asyncio
    async def test_null_result_resolves_with_json_text(self):
        correlator = StreamCorrelator("reviewer")
        pending = correlator.begin("reviewer", "task", timeout=1.0)

        correlator.feed('{"type":"result","result":null}\n')
        assert await correlator.wait(pending) == "null"


class TestTimeout:
    """A timed-out task fails once and its late result is dropped"""

    @pytest.mark.asyncio
    async def test_timeout_raises_with_duration(self):
        correlator = StreamCorrelator("reviewer")
        pending = correlator.begin("reviewer", "task", timeout=0.05)

        with pytest.raises(TaskTimeout, match="Task timeout after 50ms"):
            await correlator.wait(pending)

        assert correlator.pending is None
        assert correlator.owed_late_frames == 1

    @pytest.mark.asyncio
    async def test_late_result_discarded(self):
        on_result = Mock()
        correlator = StreamCorrelator("reviewer", on_result=on_result)
        pending = correlator.begin("reviewer", "slow", timeout=0.01)
        with pytest.raises(TaskTimeout):
            await correlator.wait(pending)

        correlator.feed('{"type":"result","result":"late"}\n')

        on_result.assert_not_called()
        assert correlator.owed_late_frames == 0

    @pytest.mark.asyncio
    async def test_next_task_gets_its_own_result(self):
        correlator = StreamCorrelator("reviewer")
        first = correlator.begin("reviewer", "slow", timeout=0.01)
        with pytest.raises(TaskTimeout):
            await correlator.wait(first)

        second = correlator.begin("reviewer", "fast", timeout=1.0)
        correlator.feed('{"type":"result","result":"late"}\n')
        assert not second.done

        correlator.feed('{"type":"result","result":"fresh"}\n')
        assert await correlator.wait(second) == "fresh"

    @pytest.mark.asyncio
    async def test_owed_frames_capped_at_one(self):
        correlator = StreamCorrelator("reviewer")
        for _ in range(3):
            pending = correlator.begin("reviewer", "slow", timeout=0.01)
            with pytest.raises(TaskTimeout):
                await correlator.wait(pending)

        assert correlator.owed_late_frames == 1

        pending = correlator.begin("reviewer", "fast", timeout=1.0)
        correlator.feed('{"type":"result","result":"late"}\n{"type":"result","result":"fresh"}\n')
        assert await correlator.wait(pending) == "fresh"

    @pytest.mark.asyncio
    async def test_result_before_deadline_wins(self):
        correlator = StreamCorrelator("reviewer")
        pending = correlator.begin("reviewer", "task", timeout=0.5)

        asyncio.get_running_loop().call_later(
            0.01, correlator.feed, '{"type":"result","result":"in time"}\n'
        )
        assert await correlator.wait(pending) == "in time"
        assert correlator.owed_late_frames == 0

    @pytest.mark.asyncio
    async def test_turn_without_result_owes_nothing(self):
        correlator = StreamCorrelator("reviewer")
        first = correlator.begin("reviewer", "fails", timeout=0.01)
        correlator.feed('{"type":"result","subtype":"error_max_turns"}\n')
        assert first.turn_ended
        assert not first.done

        with pytest.raises(TaskTimeout):
            await correlator.wait(first)
        assert correlator.owed_late_frames == 0

        second = correlator.begin("reviewer", "works", timeout=1.0)
        correlator.feed('{"type":"result","result":"fresh"}\n')
        assert await correlator.wait(second) == "fresh"

    @pytest.mark.asyncio
    async def test_timeout_after_absorbing_late_frame_does_not_rearm(self):
        correlator = StreamCorrelator("reviewer")
        first = correlator.begin("reviewer", "dropped", timeout=0.01)
        with pytest.raises(TaskTimeout):
            await correlator.wait(first)

        second = correlator.begin("reviewer", "answered", timeout=0.01)
        correlator.feed('{"type":"result","result":"taken as late"}\n')
        assert second.absorbed_late_frame
        with pytest.raises(TaskTimeout):
            await correlator.wait(second)
        assert correlator.owed_late_frames == 0

        third = correlator.begin("reviewer", "next", timeout=1.0)
        correlator.feed('{"type":"result","result":"delivered"}\n')
        assert await correlator.wait(third) == "delivered"

    def test_ends_turn(self):
        assert ends_turn(ResultFrame("x"))
        assert ends_turn(decode_frame('{"type":"result","subtype":"error_during_execution"}'))
        assert not ends_turn(ProgressFrame("assistant"))
        assert not ends_turn(UnknownFrame("noise"))
