"""
Pytest Fixtures for the agent pool

Provides agent/skill/expertise trees on disk, configs pointing at them,
and fake worker processes so the pool can be driven without a real CLI.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Keep test logs out of the project tree
os.environ.setdefault("AGENT_POOL_LOG_DIR", tempfile.mkdtemp(prefix="agent_pool_logs_"))

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import Config
from prompt_composer import PromptComposer
from process_supervisor import ProcessSupervisor
from agent_pool import AgentPool
from tests.mocks import FakeSpawner, echo_responder


REVIEWER_DEFINITION = """---
name: reviewer
skills:
  - code-review
  - missing-skill
expertise:
  - python
---
You are a careful code reviewer.

Point out bugs first, style last.
"""


@pytest.fixture
def claude_dirs(tmp_path: Path) -> dict:
    """agents/, skills/, expertise/ with a reviewer agent and a plain agent"""
    agents = tmp_path / "agents"
    skills = tmp_path / "skills"
    expertise = tmp_path / "expertise"
    for d in (agents, skills, expertise):
        d.mkdir()

    (agents / "reviewer.md").write_text(REVIEWER_DEFINITION)
    (agents / "plain.md").write_text("Just a body, no frontmatter.\n")

    (skills / "code-review").mkdir()
    (skills / "code-review" / "DEFINITION.md").write_text("Read the diff twice.\n")

    (expertise / "python.md").write_text("Prefer pathlib over os.path.\n")

    return {"root": tmp_path, "agents": agents, "skills": skills, "expertise": expertise}


@pytest.fixture
def config(claude_dirs: dict) -> Config:
    return Config(
        agents_dir=claude_dirs["agents"],
        skills_dir=claude_dirs["skills"],
        expertise_dir=claude_dirs["expertise"],
        task_timeout_ms=2000,
        worker_binary="fake-claude",
        extra_worker_args=[],
    )


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner(responder=echo_responder)


@pytest.fixture
def make_pool(config: Config, spawner: FakeSpawner):
    """Factory so each test builds its pool inside its own event loop"""
    def _make(spawner_override: FakeSpawner = None) -> AgentPool:
        return AgentPool(
            config,
            composer=PromptComposer.from_config(config),
            supervisor=ProcessSupervisor(config, spawner=spawner_override or spawner),
        )
    return _make
