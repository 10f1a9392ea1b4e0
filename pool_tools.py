"""
Agent Pool Tool Set
invoke / list / reset / warmup, each turning failures into error results
"""

import json
from typing import Optional

from errors import AgentPoolError
from tools import ToolRegistry, ToolResult
from logger import get_logger

log = get_logger("pool_tools")


def _failure(action: str, agent: Optional[str], error: Exception) -> ToolResult:
    """Request boundary: log and convert, never re-raise"""
    if isinstance(error, (AgentPoolError, OSError, ValueError)):
        log.warning(f"{action} {agent!r} failed: {type(error).__name__}: {error}")
    else:
        log.error(f"{action} {agent!r} failed unexpectedly: {error}", exc_info=True)
    return ToolResult.error(str(error))


def register_pool_tools(registry: ToolRegistry, pool):
    """Register the agent pool tools"""

    async def invoke(agent: str = None, task: str = "") -> ToolResult:
        """Send a task to an agent and wait for the result"""
        try:
            if not agent:
                raise ValueError("Missing required parameter: agent")
            result = await pool.invoke(agent, task if task is not None else "")
            return ToolResult(text=result)
        except Exception as e:
            return _failure("invoke", agent, e)

    registry.register(
        name="invoke",
        func=invoke,
        description="Send a task to an agent and wait for the result",
        signature="invoke(agent: str, task: str)",
        parameters={
            "agent": {"type": "string", "description": "Agent name (without .md extension)"},
            "task": {"type": "string", "description": "Task/prompt to send to the agent"},
        }
    )

    def list_agents() -> ToolResult:
        """List all active agents with their PIDs"""
        return ToolResult(text=json.dumps(pool.list(), indent=2))

    registry.register(
        name="list",
        func=list_agents,
        description="List all active agents with their PIDs",
        signature="list()"
    )

    def reset(agent: str = None) -> ToolResult:
        """Kill and remove an agent from the pool"""
        try:
            if not agent:
                raise ValueError("Missing required parameter: agent")
            if pool.evict(agent):
                return ToolResult(text=f'Agent "{agent}" has been reset')
            return ToolResult(text=f'Agent "{agent}" not found in pool')
        except Exception as e:
            return _failure("reset", agent, e)

    registry.register(
        name="reset",
        func=reset,
        description="Kill and remove an agent from the pool",
        signature="reset(agent: str)",
        parameters={
            "agent": {"type": "string", "description": "Agent name to reset"},
        }
    )

    async def warmup(agent: str = None) -> ToolResult:
        """Spawn an agent without a task"""
        try:
            if not agent:
                raise ValueError("Missing required parameter: agent")
            info = await pool.warmup(agent)
            return ToolResult(text=f'Agent "{agent}" warmed up with PID {info["pid"]}')
        except Exception as e:
            return _failure("warmup", agent, e)

    registry.register(
        name="warmup",
        func=warmup,
        description="Spawn an agent without a task (pre-cache for faster first invocation)",
        signature="warmup(agent: str)",
        parameters={
            "agent": {"type": "string", "description": "Agent name to warmup"},
        }
    )

    log.info("Registered 4 agent pool tools")
    return registry
