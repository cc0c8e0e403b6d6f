"""
Error taxonomy for Foreman.

Every error the agent raises on purpose derives from AgentError, so callers
can catch the whole family in one place. Most of these never reach the user:
tool errors are folded back into the conversation as data, and step errors
are recorded on the step. Only ConfigError and SecurityDenied are allowed to
escape to the top-level caller.

Command timeouts and aborts are NOT exceptions. They are reported on
ShellResult (timed_out / aborted) so a slow command never looks like a crash.
"""

from typing import Optional


class AgentError(Exception):
    """Base class for all Foreman errors."""


class ValidationError(AgentError):
    """Input failed validation (tool parameters, plan structure, ...)."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ConfigError(AgentError):
    """Configuration is missing, malformed or inconsistent."""


class ProviderError(AgentError):
    """The LLM completion service failed or returned something unusable."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ToolError(AgentError):
    """A tool could not complete its action."""

    def __init__(self, message: str, tool: Optional[str] = None):
        super().__init__(message)
        self.tool = tool


class SecurityDenied(AgentError):
    """
    A command or path was refused by the safety policy.

    needs_confirmation is True when the refusal can be lifted by approving
    root_command (see ApprovalRegistry), False for hard refusals.
    """

    def __init__(
        self,
        message: str,
        root_command: Optional[str] = None,
        path: Optional[str] = None,
        needs_confirmation: bool = False,
    ):
        super().__init__(message)
        self.root_command = root_command
        self.path = path
        self.needs_confirmation = needs_confirmation


class ConversationNotFound(AgentError, KeyError):
    """No conversation exists with the given id."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id

    def __str__(self) -> str:
        return self.args[0]


class PlanningError(AgentError):
    """A plan could not be built or scheduled (e.g. a dependency cycle in strict mode)."""
