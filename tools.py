"""
Agent Pool Tools
Tool registry exposing pool operations to whatever transport carries tool calls
"""

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict

from logger import get_logger

log = get_logger("tools")


@dataclass
class ToolResult:
    """What every tool call returns: text plus an error flag, never an exception"""
    text: str
    is_error: bool = False

    @classmethod
    def error(cls, message: str) -> "ToolResult":
        return cls(text=f"Error: {message}", is_error=True)

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "is_error": self.is_error}


class ToolRegistry:
    """Registry for pool tools"""

    # Common argument aliases - callers often use different names
    ARG_ALIASES = {
        "agent_name": "agent",
        "name": "agent",
        "subagent": "agent",
        "subagent_type": "agent",
        "prompt": "task",
        "message": "task",
        "content": "task",
        "instructions": "task",
    }

    def __init__(self):
        self._tools: Dict[str, dict] = {}

    def register(
        self,
        name: str,
        func: Callable,
        description: str,
        signature: str = "",
        parameters: dict = None
    ):
        """Register a new tool"""
        self._tools[name] = {
            "func": func,
            "description": description,
            "signature": signature,
            "parameters": parameters or {}
        }
        log.debug(f"Registered tool: {name}")

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def get_all_tools(self) -> Dict[str, dict]:
        """Get all registered tools (without functions)"""
        return {
            name: {k: v for k, v in tool.items() if k != "func"}
            for name, tool in self._tools.items()
        }

    async def execute(self, name: str, args: dict = None) -> ToolResult:
        """Execute a tool by name"""
        if name not in self._tools:
            log.error(f"Unknown tool: {name}")
            raise ValueError(f"Unknown tool: {name}")

        args = args or {}

        # Normalize argument names using aliases
        normalized_args = {}
        for key, value in args.items():
            canonical = self.ARG_ALIASES.get(key.lower(), key)
            normalized_args[canonical] = value

        log.info(f"Executing tool: {name}")
        log.debug(f"  Original args: {args}")
        if args != normalized_args:
            log.debug(f"  Normalized args: {normalized_args}")

        func = self._tools[name]["func"]

        try:
            # Handle both sync and async functions
            if inspect.iscoroutinefunction(func):
                result = await func(**normalized_args)
            else:
                result = func(**normalized_args)
        except TypeError as e:
            # Handle missing/extra arguments
            log.error(f"  Argument error: {e}")
            return ToolResult.error(str(e))

        if not isinstance(result, ToolResult):
            result = ToolResult(text=str(result))

        log.debug(f"  Result: {result.text[:200]}...")
        return result
