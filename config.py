"""
Agent Pool Configuration
Customize paths, worker executable, and timeouts here
"""

import os
import shlex
import shutil
import signal
from pathlib import Path
from typing import List, Optional

from errors import ConfigError


class Config:
    """Central configuration for the agent pool"""

    # === Paths ===
    BASE_DIR = Path(__file__).parent
    DATA_DIR = BASE_DIR / "data"
    LOGS_DIR = DATA_DIR / "logs"

    # === Worker Settings ===
    DEFAULT_WORKER_BINARY = "claude"
    # Worker speaks line-delimited JSON on both pipes
    WORKER_ARGS = [
        '--input-format', 'stream-json',
        '--output-format', 'stream-json',
    ]
    SYSTEM_PROMPT_FLAG = '--system-prompt'
    WORKER_TRAILING_ARGS = ['--dangerously-skip-permissions']

    # Sent after every completed task to drop conversational context
    CLEAR_COMMAND = "/clear"

    # Signal used for graceful agent termination
    TERMINATION_SIGNAL = signal.SIGTERM

    # === Task Settings ===
    DEFAULT_TASK_TIMEOUT_MS = 300000  # 5 minutes

    # === Prompt Composition ===
    # First match wins; SKILL.md is the older layout
    SKILL_FILENAMES = ("DEFINITION.md", "SKILL.md")

    def __init__(
        self,
        agents_dir: Optional[Path] = None,
        skills_dir: Optional[Path] = None,
        expertise_dir: Optional[Path] = None,
        task_timeout_ms: Optional[int] = None,
        worker_binary: Optional[str] = None,
        extra_worker_args: Optional[List[str]] = None,
    ):
        """Read environment, letting explicit arguments win"""
        claude_dir = Path.cwd() / ".claude"

        self.agents_dir = Path(agents_dir or os.getenv("AGENTS_DIR", claude_dir / "agents"))
        self.skills_dir = Path(skills_dir or os.getenv("SKILLS_DIR", claude_dir / "skills"))
        self.expertise_dir = Path(expertise_dir or os.getenv("EXPERTISE_DIR", claude_dir / "expertise"))

        self._raw_timeout = task_timeout_ms if task_timeout_ms is not None else os.getenv(
            "TASK_TIMEOUT_MS", str(self.DEFAULT_TASK_TIMEOUT_MS)
        )
        self.worker_binary = worker_binary or os.getenv("CLAUDE_CLI", self.DEFAULT_WORKER_BINARY)

        if extra_worker_args is None:
            extra_worker_args = shlex.split(os.getenv("AGENT_POOL_WORKER_ARGS", ""))
        self.extra_worker_args = list(extra_worker_args)

    @property
    def task_timeout_ms(self) -> int:
        """Task timeout in milliseconds; falls back to the default when unparseable"""
        try:
            value = int(self._raw_timeout)
        except (TypeError, ValueError):
            return self.DEFAULT_TASK_TIMEOUT_MS
        return value if value > 0 else self.DEFAULT_TASK_TIMEOUT_MS

    @property
    def task_timeout(self) -> float:
        """Task timeout in seconds, for asyncio"""
        return self.task_timeout_ms / 1000.0

    def worker_command(self, system_prompt: str) -> List[str]:
        """Full argv for one worker process"""
        return [
            self.worker_binary,
            *self.WORKER_ARGS,
            self.SYSTEM_PROMPT_FLAG, system_prompt,
            *self.WORKER_TRAILING_ARGS,
            *self.extra_worker_args,
        ]

    def validate(self) -> List[str]:
        """
        Check configuration at startup.

        Returns a list of human-readable problems; empty means usable.
        """
        problems = []

        try:
            timeout = int(self._raw_timeout)
            if timeout <= 0:
                problems.append(f"TASK_TIMEOUT_MS must be positive, got {timeout}")
        except (TypeError, ValueError):
            problems.append(f"TASK_TIMEOUT_MS is not an integer: {self._raw_timeout!r}")

        if not self.agents_dir.is_dir():
            problems.append(f"Agents directory not found: {self.agents_dir}")

        if shutil.which(self.worker_binary) is None:
            problems.append(f"Worker executable not found: {self.worker_binary}")

        return problems

    def ensure_valid(self):
        """Raise ConfigError listing every problem found by validate()"""
        problems = self.validate()
        if problems:
            raise ConfigError("; ".join(problems))
