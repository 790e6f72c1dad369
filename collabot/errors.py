"""
Exceptions for the collabot orchestration core.
"""


class HarnessError(Exception):
    """Base exception for orchestration errors."""


class ConfigError(HarnessError):
    """Raised when config, role or project files fail to load or validate."""


class RoleNotFoundError(HarnessError):
    """Raised when a role name does not resolve."""


class ProjectNotFoundError(HarnessError):
    """Raised when a project name does not resolve."""


class TaskNotFoundError(HarnessError):
    """Raised when a task slug does not resolve within a project."""


class UnknownAgentError(HarnessError):
    """Raised when an agent id is not tracked."""


class DuplicateAgentError(HarnessError):
    """Raised when an agent id is registered twice."""


class PoolAtCapacityError(HarnessError):
    """Raised by non-blocking pool registration when no slot is free."""
