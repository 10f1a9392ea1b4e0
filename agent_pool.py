"""
Agent Pool - one long-lived worker per agent name.

Flow for invoke("reviewer", "Review foo.py"):
1. get_or_create() returns the live worker for "reviewer", composing a fresh
   prompt and spawning one if there is none
2. The task is written to the worker's stdin as a stream-json user message
3. The worker's correlator waits for the completion frame or the deadline
4. On completion "/clear" is written right away so the next task starts with
   an empty conversation, without paying for a new process

All state lives on the event loop thread. Per-name locks make
check-then-spawn atomic; a per-worker lock keeps one task in flight per
worker, later tasks queue behind it.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional

from config import Config
from errors import TaskTimeout, WorkerClosedUnexpectedly
from path_resolver import validate_agent_name
from process_supervisor import ProcessSupervisor, WorkerProcess
from prompt_composer import PromptComposer
from stream_correlator import PendingTask, StreamCorrelator
from logger import get_logger

log = get_logger("agent_pool")


def user_message(content: str) -> Dict[str, Any]:
    """Outbound stream-json frame for a task (or a slash command)"""
    return {
        "type": "user",
        "message": {
            "role": "user",
            "content": content,
        },
    }


class WorkerState(Enum):
    """Lifecycle of a pooled worker"""
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    TERMINATING = "terminating"
    DEAD = "dead"


_TRANSITIONS = {
    WorkerState.STARTING: {WorkerState.READY, WorkerState.TERMINATING, WorkerState.DEAD},
    WorkerState.READY: {WorkerState.BUSY, WorkerState.TERMINATING, WorkerState.DEAD},
    WorkerState.BUSY: {WorkerState.READY, WorkerState.TERMINATING, WorkerState.DEAD},
    WorkerState.TERMINATING: {WorkerState.DEAD},
    WorkerState.DEAD: set(),
}


@dataclass
class WorkerEntry:
    """
    Pool bookkeeping for one agent's worker.

    Attributes:
        name: Agent name (pool key)
        worker: The running process and its readers
        correlator: Output scanner; owns the partial-line buffer
        state: Current WorkerState
        slot: Held while a task is in flight
    """
    name: str
    worker: WorkerProcess
    correlator: Optional[StreamCorrelator] = None
    state: WorkerState = WorkerState.STARTING
    spawned_at: datetime = field(default_factory=datetime.now)
    tasks_completed: int = 0
    tasks_failed: int = 0
    slot: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def pid(self) -> Optional[int]:
        return self.worker.pid

    @property
    def alive(self) -> bool:
        """Usable for new tasks: not shutting down and the process is still there"""
        return self.state in (WorkerState.STARTING, WorkerState.READY, WorkerState.BUSY) \
            and not self.worker.exited

    @property
    def output_buffer(self) -> str:
        return self.correlator.buffer if self.correlator else ""

    def can_transition(self, new_state: WorkerState) -> bool:
        return new_state in _TRANSITIONS[self.state]

    def transition(self, new_state: WorkerState):
        if not self.can_transition(new_state):
            raise RuntimeError(
                f"Agent {self.name}: illegal state change {self.state.value} -> {new_state.value}"
            )
        log.debug(f"[{self.name}] {self.state.value} -> {new_state.value}")
        self.state = new_state


class AgentPool:
    """
    Registry of live workers keyed by agent name.

    Usage:
        pool = AgentPool(Config())
        text = await pool.invoke("reviewer", "Review foo.py")
        pool.list()        # [{"name": "reviewer", "pid": 12345}]
        pool.evict("reviewer")
        await pool.shutdown()
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        composer: Optional[PromptComposer] = None,
        supervisor: Optional[ProcessSupervisor] = None,
    ):
        self.config = config or Config()
        self.composer = composer or PromptComposer.from_config(self.config)
        self.supervisor = supervisor or ProcessSupervisor(self.config)

        self._workers: Dict[str, WorkerEntry] = {}
        self._spawn_locks: Dict[str, asyncio.Lock] = {}
        # Callers holding or waiting on each spawn lock
        self._spawn_lock_users: Dict[str, int] = {}
        self.spawn_count = 0

    def __contains__(self, agent_name: str) -> bool:
        entry = self._workers.get(agent_name)
        return entry is not None and entry.alive

    def get(self, agent_name: str) -> Optional[WorkerEntry]:
        """Current entry for a name, live or not"""
        return self._workers.get(agent_name)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def get_or_create(self, agent_name: str) -> WorkerEntry:
        """
        Return the live worker for agent_name, spawning one if needed.

        Concurrent callers for the same name share one spawn.

        Raises:
            InvalidAgentName / PathTraversal, DefinitionNotFound, WorkerSpawnError
        """
        validate_agent_name(agent_name)

        lock = self._spawn_locks.setdefault(agent_name, asyncio.Lock())
        self._spawn_lock_users[agent_name] = self._spawn_lock_users.get(agent_name, 0) + 1
        try:
            async with lock:
                existing = self._workers.get(agent_name)
                if existing is not None and existing.alive:
                    return existing

                if existing is not None:
                    log.debug(f"[{agent_name}] Dropping dead entry (state={existing.state.value})")
                    self._workers.pop(agent_name, None)

                entry = await self._spawn(agent_name)
                self._workers[agent_name] = entry
                return entry
        finally:
            self._release_spawn_lock(agent_name)

    def _release_spawn_lock(self, agent_name: str):
        """Forget the name's lock once no caller holds or waits on it"""
        users = self._spawn_lock_users[agent_name] - 1
        if users:
            self._spawn_lock_users[agent_name] = users
        else:
            del self._spawn_lock_users[agent_name]
            del self._spawn_locks[agent_name]

    async def _spawn(self, agent_name: str) -> WorkerEntry:
        # Composed fresh each time so definition edits apply on respawn
        prompt = self.composer.compose(agent_name)
        worker = await self.supervisor.spawn(agent_name, prompt)

        entry = WorkerEntry(name=agent_name, worker=worker)
        entry.correlator = StreamCorrelator(agent_name, on_result=partial(self._after_result, entry))
        worker.attach(
            on_stdout=entry.correlator.feed,
            on_exit=partial(self._on_exit, entry),
            on_eof=entry.correlator.close,
        )

        # No handshake: the worker is usable as soon as it is running
        if entry.state is WorkerState.STARTING:
            entry.transition(WorkerState.READY)

        self.spawn_count += 1
        log.info(f"Agent {agent_name} ready (PID: {entry.pid}, prompt {sum(map(len, prompt.sections)):,} chars)")
        return entry

    def _after_result(self, entry: WorkerEntry, pending: PendingTask, text: str):
        """Completion frame arrived: reset context and free the worker"""
        entry.tasks_completed += 1
        self._reset_context(entry)

        if entry.state is WorkerState.BUSY:
            entry.transition(WorkerState.READY)

    def _reset_context(self, entry: WorkerEntry):
        """Queue /clear so the next task starts with an empty conversation"""
        if not entry.alive:
            return
        try:
            entry.worker.send_nowait(user_message(self.config.CLEAR_COMMAND))
        except WorkerClosedUnexpectedly as e:
            log.warning(f"[{entry.name}] Could not send {self.config.CLEAR_COMMAND}: {e}")

    def _on_exit(self, entry: WorkerEntry, returncode: Optional[int], error: Optional[BaseException]):
        """Process exited or its pipes failed: retire the entry"""
        if entry.state is not WorkerState.DEAD:
            entry.transition(WorkerState.DEAD)

        if error is not None and entry.correlator is not None:
            entry.correlator.fail(WorkerClosedUnexpectedly(f"Agent {entry.name} I/O error: {error}"))
        if entry.correlator is not None:
            entry.correlator.close()

        # A newer worker may already own the name
        if self._workers.get(entry.name) is entry:
            del self._workers[entry.name]
            log.info(f"Agent {entry.name} removed from pool (code={returncode})")

    def _discard(self, entry: WorkerEntry):
        """Drop a worker that can no longer be used and make sure it goes away"""
        if self._workers.get(entry.name) is entry:
            del self._workers[entry.name]
        if entry.can_transition(WorkerState.TERMINATING):
            entry.transition(WorkerState.TERMINATING)
        entry.worker.terminate(self.config.TERMINATION_SIGNAL)

    # =========================================================================
    # Operations
    # =========================================================================

    async def invoke(self, agent_name: str, task: str, timeout_ms: Optional[int] = None) -> str:
        """
        Run a task on an agent's worker and return the result text.

        Raises:
            InvalidAgentName / PathTraversal, DefinitionNotFound, WorkerSpawnError
            TaskTimeout: no completion frame in time (worker kept and freed)
            WorkerClosedUnexpectedly: worker died mid-task (entry removed)
        """
        timeout = (timeout_ms if timeout_ms is not None else self.config.task_timeout_ms) / 1000.0
        entry = await self.get_or_create(agent_name)

        async with entry.slot:
            if not entry.alive:
                raise WorkerClosedUnexpectedly(f"Agent {agent_name} process closed unexpectedly")

            pending = entry.correlator.begin(agent_name, task, timeout)
            entry.transition(WorkerState.BUSY)
            log.info(f"[{agent_name}] Dispatching task ({len(task):,} chars, timeout {timeout:.0f}s)")

            try:
                await entry.worker.write_line(user_message(task))
                return await entry.correlator.wait(pending)
            except TaskTimeout:
                entry.tasks_failed += 1
                log.warning(f"[{agent_name}] Task timed out; worker kept (PID: {entry.pid})")
                self._reset_context(entry)
                raise
            except WorkerClosedUnexpectedly:
                entry.tasks_failed += 1
                self._discard(entry)
                raise
            finally:
                if not pending.done:
                    # Cancelled by the caller or the write failed
                    entry.correlator.abandon(pending)
                    self._reset_context(entry)
                if entry.state is WorkerState.BUSY:
                    entry.transition(WorkerState.READY)

    async def warmup(self, agent_name: str) -> Dict[str, Optional[int]]:
        """Spawn without a task so the first invoke skips startup"""
        entry = await self.get_or_create(agent_name)
        return {"pid": entry.pid}

    def evict(self, agent_name: str) -> bool:
        """
        Terminate and remove an agent's worker.

        Returns:
            True if a worker was in the pool, False otherwise (nothing happens)
        """
        entry = self._workers.pop(agent_name, None)
        if entry is None:
            return False

        if entry.can_transition(WorkerState.TERMINATING):
            entry.transition(WorkerState.TERMINATING)
        entry.worker.terminate(self.config.TERMINATION_SIGNAL)
        log.info(f"Agent {agent_name} evicted (PID: {entry.pid})")
        return True

    def list(self) -> List[Dict[str, Any]]:
        """Snapshot of workers whose process has not exited"""
        return [
            {"name": name, "pid": entry.pid}
            for name, entry in list(self._workers.items())
            if not entry.worker.exited
        ]

    def status(self) -> Dict[str, Any]:
        """Per-worker detail for diagnostics"""
        now = datetime.now()
        return {
            "spawn_count": self.spawn_count,
            "workers": {
                name: {
                    "pid": entry.pid,
                    "state": entry.state.value,
                    "tasks_completed": entry.tasks_completed,
                    "tasks_failed": entry.tasks_failed,
                    "uptime_seconds": round((now - entry.spawned_at).total_seconds(), 1),
                    "buffered_chars": len(entry.output_buffer),
                }
                for name, entry in self._workers.items()
            },
        }

    async def shutdown(self, grace_seconds: float = 5.0):
        """Evict every worker and wait for them to exit, killing stragglers"""
        entries = list(self._workers.values())
        if not entries:
            return

        log.info(f"Shutting down {len(entries)} agent(s)...")
        for entry in entries:
            self.evict(entry.name)

        deadline = time.monotonic() + grace_seconds
        for entry in entries:
            remaining = max(0.0, deadline - time.monotonic())
            await entry.worker.wait_closed(timeout=remaining)
            if not entry.worker.exited:
                log.warning(f"Agent {entry.name} did not exit, killing PID {entry.pid}")
                entry.worker.kill()
                await entry.worker.wait_closed(timeout=1.0)

        log.info("Agent pool shutdown complete")
