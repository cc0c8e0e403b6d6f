"""
Tool Registry and built-in tools for Foreman.

WHAT THIS FILE DOES:
-------------------
Defines the tools the model can call and the registry that routes calls to
them:

1. ToolRegistry: name -> tool lookup, parameter validation, and an execute()
   that NEVER raises. Any failure comes back as
   {"success": False, "error": "...", "tool": name} so the interaction loop
   can hand it to the model as data.
2. ShellTool: runs commands through the ShellExecutor (policy + teardown).
3. FileTool: read/write/create/list/exists/delete/mkdir inside the allowed
   directories.
4. HttpTool: simple HTTP requests with httpx.

SECURITY SETTINGS:
-----------------
Tools receive a callable that returns the current SecurityConfig and call
it on every execution, so changes at runtime apply to the next call.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional

import httpx

from config import SecurityConfig
from errors import SecurityDenied, ToolError, ValidationError
from schemas import ToolDefinition, ToolParameter
from shell import ApprovalRegistry, ShellExecutor, current_working_directory, is_path_allowed

logger = logging.getLogger(__name__)

MAX_HTTP_BODY_CHARS = 10000


# =============================================================================
# SECTION 1: TOOL BASE CLASS
# =============================================================================

class BaseTool(ABC):
    """
    A capability the model can invoke by name.

    Subclasses set `definition` and implement `execute(**params)`.
    """

    definition: ToolDefinition

    def __init__(self, security: Optional[Callable[[], SecurityConfig]] = None):
        self._security = security or SecurityConfig

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def description(self) -> str:
        return self.definition.description

    @property
    def parameters(self) -> list[ToolParameter]:
        return self.definition.parameters

    def json_schema(self) -> dict:
        return self.definition.json_schema()

    def validate_parameters(self, params: dict) -> None:
        """
        Check params against the definition.

        Raises:
            ValidationError: On a missing required or unknown parameter, or a
                value outside the allowed enum
        """
        for param in self.parameters:
            if param.required and params.get(param.name) is None:
                raise ValidationError(f"Missing required parameter: {param.name}", field=param.name)
            if param.enum and param.name in params and params[param.name] not in param.enum:
                raise ValidationError(
                    f"Invalid value for {param.name}: {params[param.name]!r} (expected one of {param.enum})",
                    field=param.name,
                )

        known = {p.name for p in self.parameters}
        for key in params:
            if key not in known:
                raise ValidationError(f"Unknown parameter: {key}", field=key)

    def sanitize_path(self, path: str) -> Path:
        """
        Resolve a path against the working directory and check the allow-list.

        Raises:
            SecurityDenied: If the path is outside the allowed directories
        """
        base = current_working_directory().path
        resolved = (base / Path(path).expanduser()).resolve()
        if not is_path_allowed(resolved, self._security().allowed_directories, base=base):
            raise SecurityDenied(
                f"Access denied: {path} is outside the allowed directories",
                path=str(resolved),
            )
        return resolved

    @abstractmethod
    async def execute(self, **params) -> Any:
        """Perform the tool's action and return a JSON-serializable result."""


# =============================================================================
# SECTION 2: TOOL REGISTRY
# =============================================================================

class ToolRegistry:
    """
    Registry of available tools.

    WHY THIS EXISTS:
    ----------------
    The model needs to know what tools it can use, and the interaction loop
    needs one place to run them. This registry:
    1. Stores tools by name
    2. Validates calls before execution
    3. Converts every failure into a result the model can read
    4. Generates prompts describing available tools

    Example usage:
        registry = ToolRegistry()
        registry.register(FileTool(lambda: config.security))
        result = await registry.execute("file", {"action": "read", "path": "README.md"})
    """

    def __init__(self):
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        """Register a tool (replacing any tool with the same name)."""
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> Optional[BaseTool]:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[BaseTool]:
        """Get all registered tools."""
        return list(self._tools.values())

    def get_tools_by_names(self, names: list[str]) -> list[BaseTool]:
        """Tools for the given names, in order. Unknown names are skipped."""
        tools = []
        for name in names:
            tool = self._tools.get(name)
            if tool is None:
                logger.warning("Configured tool is not registered: %s", name)
                continue
            tools.append(tool)
        return tools

    def validate_call(self, name: str, params: dict) -> tuple[bool, Optional[str]]:
        """
        Validate a tool call against its definition.

        Returns:
            (is_valid, error_message) - error_message is None if valid
        """
        tool = self._tools.get(name)
        if not tool:
            return False, f"Tool not found: {name}"
        try:
            tool.validate_parameters(params)
        except ValidationError as e:
            return False, str(e)
        return True, None

    async def execute(self, name: str, params: Optional[dict] = None) -> Any:
        """
        Execute a tool call. Never raises for tool failures.

        Args:
            name: Tool name
            params: Tool arguments

        Returns:
            The tool's result, or {"success": False, "error": ..., "tool": name}
        """
        params = params or {}
        start_time = time.time()

        valid, error = self.validate_call(name, params)
        if not valid:
            logger.warning("Rejected call to %s: %s", name, error)
            return {"success": False, "error": error, "tool": name}

        try:
            result = await self._tools[name].execute(**params)
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            failure = {"success": False, "error": str(e), "tool": name}
            if isinstance(e, SecurityDenied) and e.needs_confirmation:
                failure["needs_confirmation"] = True
                failure["root_command"] = e.root_command
            return failure

        duration_ms = int((time.time() - start_time) * 1000)
        logger.debug("Tool %s finished in %dms", name, duration_ms)
        return result

    def get_tools_prompt(self, names: Optional[list[str]] = None) -> str:
        """
        Generate a prompt section describing the tools.

        Included in the system prompt so models without native function
        calling still know what exists.
        """
        tools = self.get_tools_by_names(names) if names is not None else self.list_tools()
        lines = ["Available tools:\n"]

        for tool in tools:
            lines.append(f"## {tool.name}")
            lines.append(f"Description: {tool.description}")
            if tool.definition.dangerous:
                lines.append("Some uses require user approval.")
            lines.append("Parameters:")
            for param in tool.parameters:
                required = "(required)" if param.required else "(optional)"
                choices = f" [one of: {', '.join(param.enum)}]" if param.enum else ""
                lines.append(f"  - {param.name} ({param.type}) {required}: {param.description}{choices}")
            lines.append("")

        return "\n".join(lines)


# =============================================================================
# SECTION 3: TOOL IMPLEMENTATIONS
# =============================================================================

class ShellTool(BaseTool):
    """Run shell commands through the ShellExecutor."""

    definition = ToolDefinition(
        name="shell",
        description=(
            "Execute a shell command and return stdout, stderr and the exit code. "
            "'cd <dir>' changes the working directory for later commands. "
            "Potentially dangerous commands need user confirmation."
        ),
        parameters=[
            ToolParameter(name="command", type="string", description="Shell command to execute"),
            ToolParameter(name="cwd", type="string", description="Directory to run in", required=False),
            ToolParameter(name="timeout", type="integer", description="Timeout in milliseconds", required=False),
        ],
        dangerous=True,
    )

    def __init__(
        self,
        security: Optional[Callable[[], SecurityConfig]] = None,
        approvals: Optional[ApprovalRegistry] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        super().__init__(security)
        self.executor = ShellExecutor(self._security, approvals)
        self.cancel_event = cancel_event

    @property
    def approvals(self) -> ApprovalRegistry:
        return self.executor.approvals

    async def execute(self, command: str, cwd: Optional[str] = None, timeout: Optional[Any] = None) -> dict:
        timeout_ms = None
        if timeout is not None:
            try:
                timeout_ms = int(timeout)
            except (TypeError, ValueError):
                raise ValidationError(f"timeout must be an integer, got {timeout!r}", field="timeout")

        result = await self.executor.run(command, cwd=cwd, timeout_ms=timeout_ms, cancel_event=self.cancel_event)
        return result.to_tool_output()


class FileTool(BaseTool):
    """File operations restricted to the allowed directories."""

    definition = ToolDefinition(
        name="file",
        description=(
            "Read, write, create, list, check or delete files and directories. "
            "Paths are relative to the working directory and must stay inside the allowed directories."
        ),
        parameters=[
            ToolParameter(
                name="action", type="string", description="Operation to perform",
                enum=["read", "write", "create", "list", "exists", "delete", "mkdir"],
            ),
            ToolParameter(name="path", type="string", description="File or directory path"),
            ToolParameter(name="content", type="string", description="Content for write/create", required=False),
        ],
    )

    async def execute(self, action: str, path: str, content: Optional[str] = None) -> dict:
        target = self.sanitize_path(path)

        if action == "read":
            if not target.exists():
                raise ToolError(f"File not found: {path}", tool=self.name)
            if target.is_dir():
                raise ToolError(f"Path is a directory: {path}", tool=self.name)
            text = target.read_text(errors="replace")
            return {"success": True, "path": str(target), "content": text, "size": len(text)}

        if action in ("write", "create"):
            if content is None:
                raise ValidationError(f"'content' is required for {action}", field="content")
            if action == "create" and target.exists():
                raise ToolError(f"File already exists: {path}", tool=self.name)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
            return {"success": True, "path": str(target), "message": f"Wrote {len(content)} characters to {path}"}

        if action == "list":
            if not target.is_dir():
                raise ToolError(f"Not a directory: {path}", tool=self.name)
            entries = [
                {
                    "name": entry.name,
                    "type": "directory" if entry.is_dir() else "file",
                    "size": entry.stat().st_size if entry.is_file() else None,
                }
                for entry in sorted(target.iterdir())
            ]
            return {"success": True, "path": str(target), "entries": entries}

        if action == "exists":
            kind = None
            if target.is_dir():
                kind = "directory"
            elif target.exists():
                kind = "file"
            return {"success": True, "path": str(target), "exists": kind is not None, "type": kind}

        if action == "delete":
            if not target.exists():
                raise ToolError(f"Path not found: {path}", tool=self.name)
            if target.is_dir():
                try:
                    target.rmdir()
                except OSError:
                    raise ToolError(f"Directory not empty: {path}", tool=self.name)
            else:
                target.unlink()
            return {"success": True, "path": str(target), "message": f"Deleted {path}"}

        if action == "mkdir":
            target.mkdir(parents=True, exist_ok=True)
            return {"success": True, "path": str(target), "message": f"Created directory {path}"}

        raise ValidationError(f"Unknown file action: {action}", field="action")


class HttpTool(BaseTool):
    """Make HTTP requests."""

    definition = ToolDefinition(
        name="http",
        description="Make an HTTP request and return the status, headers and (truncated) body.",
        parameters=[
            ToolParameter(name="url", type="string", description="Absolute http(s) URL"),
            ToolParameter(
                name="method", type="string", description="HTTP method", required=False,
                enum=["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD"], default="GET",
            ),
            ToolParameter(name="headers", type="object", description="Request headers", required=False),
            ToolParameter(name="body", type="string", description="Request body (JSON objects are sent as JSON)", required=False),
            ToolParameter(name="timeout", type="number", description="Timeout in seconds", required=False, default=30),
        ],
    )

    def __init__(
        self,
        security: Optional[Callable[[], SecurityConfig]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(security)
        self._transport = transport

    async def execute(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[dict] = None,
        body: Optional[Any] = None,
        timeout: float = 30,
    ) -> dict:
        if not url.startswith(("http://", "https://")):
            raise ValidationError(f"Only http(s) URLs are supported: {url}", field="url")

        request_kwargs: dict[str, Any] = {"headers": headers or {}}
        if isinstance(body, (dict, list)):
            request_kwargs["json"] = body
        elif body is not None:
            request_kwargs["content"] = str(body)

        try:
            async with httpx.AsyncClient(timeout=float(timeout), transport=self._transport) as client:
                response = await client.request(method.upper(), url, **request_kwargs)
        except httpx.HTTPError as e:
            raise ToolError(f"HTTP request failed: {e}", tool=self.name) from e

        text = response.text
        return {
            "success": response.is_success,
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": text[:MAX_HTTP_BODY_CHARS],
            "truncated": len(text) > MAX_HTTP_BODY_CHARS,
        }


def create_default_registry(
    security: Optional[Callable[[], SecurityConfig]] = None,
    approvals: Optional[ApprovalRegistry] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ToolRegistry:
    """
    Create a registry with the standard tools (shell, file, http).

    Args:
        security: Callable returning the current SecurityConfig
        approvals: Shared approval registry for dangerous commands
        cancel_event: Event that aborts running shell commands when set
    """
    registry = ToolRegistry()
    registry.register(ShellTool(security, approvals=approvals, cancel_event=cancel_event))
    registry.register(FileTool(security))
    registry.register(HttpTool(security))
    return registry
