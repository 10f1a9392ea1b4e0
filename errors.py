"""
Agent Pool Errors

Every failure the pool can surface to a caller. The tool layer catches
AgentPoolError at the request boundary and turns it into an error result.
"""


class AgentPoolError(Exception):
    """Base class for all pool failures."""


class PathTraversal(AgentPoolError):
    """A logical name resolved outside its trusted root directory."""


class InvalidAgentName(PathTraversal):
    """An agent name that is not a safe filename."""


class DefinitionNotFound(AgentPoolError):
    """The agent's definition file does not exist."""


class TaskTimeout(AgentPoolError):
    """No completion frame arrived before the task deadline."""


class WorkerClosedUnexpectedly(AgentPoolError):
    """The worker's output stream closed while a task was pending."""


class WorkerSpawnError(AgentPoolError):
    """The operating system refused to launch the worker."""


class ConfigError(AgentPoolError):
    """Startup configuration is unusable."""
