"""
Spawn Gate - decide whether a subagent spawn request may go through.

Requests arrive as tool-call descriptors:

    {"tool_name": "Task", "tool_input": {"subagent_type": "reviewer"}}

Built-in subagent types pass. A custom agent that has a definition in the
agents directory is blocked and pointed at the pool's invoke tool instead,
so custom agents always run inside the pool. Anything the gate cannot make
sense of is allowed through.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from errors import PathTraversal
from path_resolver import resolve_within
from logger import get_logger

log = get_logger("spawn_gate")

GATED_TOOL = "Task"

BUILT_IN_AGENTS = frozenset({
    "general-purpose",
    "Explore",
    "Plan",
    "claude-code-guide",
    "statusline-setup",
})

INVOKE_TOOL_NAME = "mcp__agent-pool__invoke"


@dataclass(frozen=True)
class GateDecision:
    """allow, or block with a reason"""
    decision: str
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.decision == "allow"

    def to_dict(self) -> Dict[str, Any]:
        if self.reason is None:
            return {"decision": self.decision}
        return {"decision": self.decision, "reason": self.reason}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


ALLOW = GateDecision("allow")


def evaluate(request: Any, agents_dir: Path) -> GateDecision:
    """Decide on an already-parsed spawn request"""
    if not isinstance(request, dict) or request.get("tool_name") != GATED_TOOL:
        return ALLOW

    tool_input = request.get("tool_input") or {}
    subagent_type = tool_input.get("subagent_type") if isinstance(tool_input, dict) else None

    if not subagent_type or not isinstance(subagent_type, str):
        return ALLOW

    if subagent_type in BUILT_IN_AGENTS:
        return ALLOW

    try:
        agent_path = resolve_within(agents_dir, subagent_type, ".md")
    except PathTraversal:
        log.warning(f"Blocked spawn with traversal in subagent_type: {subagent_type!r}")
        return GateDecision("block", "Invalid agent name: path traversal detected")

    if agent_path.is_file():
        log.info(f"Blocked Task spawn of custom agent {subagent_type!r}")
        return GateDecision(
            "block",
            f'Custom agent "{subagent_type}" detected. Use {INVOKE_TOOL_NAME} instead of '
            f'Task tool for custom subagents. The Task tool is reserved for built-in '
            f'Claude agents only.'
        )

    # Unknown agent type - might be a new built-in
    return ALLOW


def evaluate_raw(raw: str, agents_dir: Path) -> GateDecision:
    """Decide on the raw JSON text of a request; unparseable input is allowed"""
    try:
        request = json.loads(raw)
    except json.JSONDecodeError as e:
        log.warning(f"Gate could not parse request: {e}")
        return ALLOW
    return evaluate(request, agents_dir)
