"""
Process Supervisor - launch worker subprocesses and watch them.

Each worker is started with stdin/stdout/stderr piped and its composed
system prompt passed on the command line, so the prompt is in place before
the first task is written. Two reader tasks run per worker:

- stdout: decoded chunks are handed to the pool's correlator
- stderr: lines go to the operator log only, never to callers

When stdout ends (or a read fails) the process is reaped and the exit
callback fires exactly once. That callback is the only way crashed workers
leave the pool.
"""

import asyncio
import codecs
import json
import os
from typing import Any, Awaitable, Callable, List, Optional

from config import Config
from errors import WorkerClosedUnexpectedly, WorkerSpawnError
from prompt_composer import ComposedPrompt
from logger import get_logger

log = get_logger("process_supervisor")

READ_CHUNK_SIZE = 64 * 1024

# Called with (returncode, error); error is set when a pipe read failed
ExitCallback = Callable[[Optional[int], Optional[BaseException]], None]
Spawner = Callable[..., Awaitable[Any]]


def encode_frame(message: dict) -> bytes:
    """One line of stream-json"""
    return (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")


class WorkerProcess:
    """
    One running worker and its pipe readers.

    Wraps an asyncio.subprocess.Process (or anything with the same pipes,
    pid, returncode, wait() and send_signal()).
    """

    def __init__(self, agent_name: str, process):
        self.agent_name = agent_name
        self.process = process
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stderr_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stderr_buffer = ""
        self._reader_tasks: List[asyncio.Task] = []
        self._exit_reported = False
        self.exit_code: Optional[int] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def exited(self) -> bool:
        """True once the process is gone (or known to be going)"""
        return self._exit_reported or self.process.returncode is not None

    def attach(
        self,
        on_stdout: Callable[[str], None],
        on_exit: ExitCallback,
        on_eof: Optional[Callable[[], None]] = None,
    ):
        """Start the stdout/stderr readers"""
        self._reader_tasks = [
            asyncio.create_task(
                self._read_stdout(on_stdout, on_exit, on_eof),
                name=f"{self.agent_name}-stdout"
            ),
            asyncio.create_task(self._read_stderr(), name=f"{self.agent_name}-stderr"),
        ]

    async def _read_stdout(
        self,
        on_stdout: Callable[[str], None],
        on_exit: ExitCallback,
        on_eof: Optional[Callable[[], None]],
    ):
        error: Optional[BaseException] = None
        try:
            while True:
                chunk = await self.process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = self._decoder.decode(chunk)
                if text:
                    on_stdout(text)

            tail = self._decoder.decode(b"", final=True)
            if tail:
                on_stdout(tail)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            log.error(f"[{self.agent_name}:error] {e}")

        if on_eof is not None:
            on_eof()

        if error is not None and self.process.returncode is None:
            self._send_signal(Config.TERMINATION_SIGNAL)

        returncode = await self.process.wait()
        self._report_exit(on_exit, returncode, error)

    async def _read_stderr(self):
        stderr = self.process.stderr
        if stderr is None:
            return
        try:
            while True:
                chunk = await stderr.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self._log_stderr(self._stderr_decoder.decode(chunk))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.debug(f"[{self.agent_name}:stderr] reader stopped: {e}")

        self._log_stderr(self._stderr_decoder.decode(b"", final=True) + "\n")

    def _log_stderr(self, text: str):
        self._stderr_buffer += text
        *lines, self._stderr_buffer = self._stderr_buffer.split("\n")
        for line in lines:
            if line.strip():
                log.warning(f"[{self.agent_name}:stderr] {line}")

    def _report_exit(self, on_exit: ExitCallback, returncode: Optional[int], error: Optional[BaseException]):
        if self._exit_reported:
            return
        self._exit_reported = True
        self.exit_code = returncode

        signal_note = f" signal={-returncode}" if returncode is not None and returncode < 0 else ""
        log.info(f"[{self.agent_name}:exit] code={returncode}{signal_note}")

        try:
            on_exit(returncode, error)
        except Exception as e:
            log.error(f"[{self.agent_name}] Exit callback failed: {e}", exc_info=True)

    async def write_line(self, message: dict):
        """Send one JSON frame followed by a newline"""
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing() or self.exited:
            raise WorkerClosedUnexpectedly(f"Agent {self.agent_name} has no writable stdin")

        try:
            stdin.write(encode_frame(message))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise WorkerClosedUnexpectedly(f"Agent {self.agent_name} stdin closed: {e}") from e

    def send_nowait(self, message: dict):
        """
        Queue one JSON frame without waiting for the pipe to drain.

        Used from the result callback so the frame lands ahead of any task
        written afterwards.
        """
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing() or self.exited:
            raise WorkerClosedUnexpectedly(f"Agent {self.agent_name} has no writable stdin")
        try:
            stdin.write(encode_frame(message))
        except (BrokenPipeError, ConnectionResetError) as e:
            raise WorkerClosedUnexpectedly(f"Agent {self.agent_name} stdin closed: {e}") from e

    def _send_signal(self, sig) -> bool:
        try:
            self.process.send_signal(sig)
            return True
        except ProcessLookupError:
            return False

    def terminate(self, sig=Config.TERMINATION_SIGNAL) -> bool:
        """Signal the process; the readers reap it and report the exit"""
        if self.process.returncode is not None:
            return False
        log.info(f"[{self.agent_name}] Sending {getattr(sig, 'name', sig)} to PID {self.pid}")
        return self._send_signal(sig)

    def kill(self) -> bool:
        """Last resort when the termination signal was ignored"""
        if self.process.returncode is not None:
            return False
        try:
            self.process.kill()
            return True
        except ProcessLookupError:
            return False

    async def wait_closed(self, timeout: Optional[float] = None):
        """Wait for the reader tasks to finish (exit reported)"""
        if not self._reader_tasks:
            return
        await asyncio.wait(self._reader_tasks, timeout=timeout)


class ProcessSupervisor:
    """
    Spawns worker processes for the pool.

    The spawner defaults to asyncio.create_subprocess_exec; tests pass a
    coroutine returning a fake process with in-memory streams.
    """

    def __init__(self, config: Config, spawner: Optional[Spawner] = None):
        self.config = config
        self._spawner = spawner or asyncio.create_subprocess_exec

    async def spawn(self, agent_name: str, prompt: ComposedPrompt) -> WorkerProcess:
        """
        Launch a worker with its system prompt.

        Raises:
            WorkerSpawnError: executable missing, not runnable, argument list too long...
        """
        cmd = self.config.worker_command(prompt.render())

        try:
            process = await self._spawner(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ},
            )
        except OSError as e:
            log.error(f"[{agent_name}:error] Failed to spawn {cmd[0]}: {e}")
            raise WorkerSpawnError(f"Failed to spawn agent {agent_name}: {e}") from e

        if process.stdin is None or process.stdout is None:
            raise WorkerSpawnError(f"Agent {agent_name} has no stdin/stdout")

        log.info(f"[{agent_name}] Spawned worker (PID: {process.pid})")
        return WorkerProcess(agent_name, process)
