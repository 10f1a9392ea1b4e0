"""
Stream Correlator - match worker output to the task waiting on it.

Workers write newline-delimited JSON on stdout, interleaved with whatever
human-readable output they like. Only one kind of line matters:

    {"type": "result", "result": "<text>"}

which concludes the current task. Everything else is decoded into a
ProgressFrame or UnknownFrame and dropped.

The correlator does no I/O. The supervisor feeds it decoded text chunks and
the pool wires up what happens on resolution, which keeps it testable without
a subprocess.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Union

from errors import TaskTimeout, WorkerClosedUnexpectedly
from logger import get_logger

log = get_logger("stream_correlator")

RESULT_TYPE = "result"


# =============================================================================
# Frames
# =============================================================================

@dataclass(frozen=True)
class ResultFrame:
    """Completion record carrying the task's result text"""
    result: Any


@dataclass(frozen=True)
class ProgressFrame:
    """Any other typed JSON object (assistant turns, tool use, system init...)"""
    kind: str
    payload: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class UnknownFrame:
    """Non-JSON text, non-object JSON, or an object without a type"""
    line: str


Frame = Union[ResultFrame, ProgressFrame, UnknownFrame]


def decode_frame(line: str) -> Frame:
    """Decode one output line. Never raises."""
    try:
        parsed = json.loads(line)
    except (json.JSONDecodeError, RecursionError):
        return UnknownFrame(line)

    if not isinstance(parsed, dict):
        return UnknownFrame(line)

    kind = parsed.get("type")
    if not isinstance(kind, str):
        return UnknownFrame(line)

    if kind == RESULT_TYPE and "result" in parsed:
        return ResultFrame(parsed["result"])

    return ProgressFrame(kind, parsed)


def ends_turn(frame: Frame) -> bool:
    """True for any result-typed frame, with or without a result payload"""
    return isinstance(frame, ResultFrame) or (
        isinstance(frame, ProgressFrame) and frame.kind == RESULT_TYPE
    )


def result_text(result: Any) -> str:
    """Result payloads are normally strings; anything else is sent back as JSON"""
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False)


# =============================================================================
# Pending task bookkeeping
# =============================================================================

@dataclass
class PendingTask:
    """The single task a worker is currently serving"""
    agent_name: str
    task: str
    timeout: float
    deadline: float
    future: asyncio.Future
    started_at: float = field(default_factory=time.monotonic)
    # Worker closed its turn with a result frame that carried no result
    turn_ended: bool = False
    # A late frame from an earlier task was discarded while this one waited
    absorbed_late_frame: bool = False

    @property
    def done(self) -> bool:
        return self.future.done()


class StreamCorrelator:
    """
    Per-worker output scanner.

    Usage:
        correlator = StreamCorrelator("reviewer", on_result=after_task)
        pending = correlator.begin("reviewer", "Review foo.py", timeout=300)
        # supervisor calls correlator.feed(chunk) for every stdout chunk
        text = await correlator.wait(pending)
    """

    def __init__(
        self,
        agent_name: str,
        on_result: Optional[Callable[[PendingTask, str], None]] = None,
    ):
        self.agent_name = agent_name
        self.buffer = ""
        self.pending: Optional[PendingTask] = None
        self._on_result = on_result
        self._closed = False

        # Completion frames still expected from timed-out tasks
        self.owed_late_frames = 0

        # Counters for status reporting
        self.lines_seen = 0
        self.frames_discarded = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def begin(self, agent_name: str, task: str, timeout: float) -> PendingTask:
        """Register the task about to be written to the worker"""
        if self._closed:
            raise WorkerClosedUnexpectedly(f"Agent {agent_name} process closed unexpectedly")
        if self.pending is not None and not self.pending.done:
            raise RuntimeError(f"Agent {agent_name} already has a task in flight")

        loop = asyncio.get_running_loop()
        self.pending = PendingTask(
            agent_name=agent_name,
            task=task,
            timeout=timeout,
            deadline=loop.time() + timeout,
            future=loop.create_future(),
        )
        return self.pending

    async def wait(self, pending: PendingTask) -> str:
        """
        Wait for the completion frame or the deadline.

        Raises:
            TaskTimeout: deadline passed first (raised once; the task is abandoned)
            WorkerClosedUnexpectedly: stdout closed before a result arrived
        """
        remaining = max(0.0, pending.deadline - asyncio.get_running_loop().time())
        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout=remaining)
        except asyncio.TimeoutError:
            # The frame may have landed in the same loop iteration as the timer
            if pending.future.done() and not pending.future.cancelled():
                return pending.future.result()
            self.abandon(pending)
            timeout_ms = int(round(pending.timeout * 1000))
            raise TaskTimeout(f"Task timeout after {timeout_ms}ms") from None

    def abandon(self, pending: PendingTask):
        """
        Drop a timed-out task; its completion frame, if it ever comes, is discarded.

        Nothing is owed when the worker already closed this task's turn, or
        when this task already absorbed a late frame: in both cases the
        worker is answering in order and the next frame belongs to the next
        task.
        """
        if self.pending is pending:
            self.pending = None
        if not pending.future.done():
            pending.future.cancel()

        if pending.turn_ended or pending.absorbed_late_frame:
            self.owed_late_frames = 0
        else:
            # One owed frame at most
            self.owed_late_frames = 1
        log.warning(f"[{self.agent_name}] Task abandoned after timeout: {pending.task[:80]!r}")

    def feed(self, chunk: str) -> List[Frame]:
        """
        Consume a stdout chunk and return the frames decoded from complete lines.

        The trailing fragment (no newline yet) stays in the buffer until the
        next chunk completes it.
        """
        self.buffer += chunk
        *lines, self.buffer = self.buffer.split("\n")

        frames = []
        for line in lines:
            if not line.strip():
                continue
            self.lines_seen += 1
            frame = decode_frame(line)
            frames.append(frame)

            if ends_turn(frame):
                self._handle_result(frame)
            else:
                self.frames_discarded += 1
                if isinstance(frame, UnknownFrame):
                    log.debug(f"[{self.agent_name}:stdout] {line[:200]}")

        return frames

    def _handle_result(self, frame: Frame):
        pending = self.pending

        if self.owed_late_frames:
            self.owed_late_frames -= 1
            self.frames_discarded += 1
            if pending is not None:
                pending.absorbed_late_frame = True
            log.info(f"[{self.agent_name}] Discarding late result from a timed-out task")
            return

        if pending is None or pending.done:
            self.frames_discarded += 1
            log.debug(f"[{self.agent_name}] Unsolicited result frame discarded")
            return

        if not isinstance(frame, ResultFrame):
            # Turn over (error subtype), nothing to deliver; the task runs to its deadline
            pending.turn_ended = True
            self.frames_discarded += 1
            log.warning(f"[{self.agent_name}] Worker ended its turn without a result")
            return

        text = result_text(frame.result)
        self.pending = None
        pending.future.set_result(text)

        elapsed = time.monotonic() - pending.started_at
        log.info(f"[{self.agent_name}] Task completed in {elapsed:.1f}s ({len(text):,} chars)")

        if self._on_result is not None:
            try:
                self._on_result(pending, text)
            except Exception as e:
                log.error(f"[{self.agent_name}] Result callback failed: {e}", exc_info=True)

    def close(self):
        """Output stream ended; fail whatever is still waiting"""
        self._closed = True
        if self.buffer.strip():
            # A final line without newline is still a line
            tail, self.buffer = self.buffer, ""
            self.feed(tail + "\n")
        self.buffer = ""

        pending, self.pending = self.pending, None
        if pending is not None and not pending.done:
            pending.future.set_exception(
                WorkerClosedUnexpectedly(f"Agent {pending.agent_name} process closed unexpectedly")
            )

    def fail(self, error: BaseException):
        """Reject the pending task with an I/O error from the supervisor"""
        pending, self.pending = self.pending, None
        if pending is not None and not pending.done:
            pending.future.set_exception(error)
