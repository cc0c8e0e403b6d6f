"""
Shared fixtures for the Foreman tests.

ScriptedProvider stands in for a model service: it replays a fixed list of
assistant messages and records every request it receives.
"""

import shutil
import sys
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Callable, Optional, Union

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from config import Config, SecurityConfig
from providers import ModelProvider
from schemas import Message, Role, StreamChunk, ToolCall, ToolDefinition

Scripted = Union[Message, Callable[[list[Message]], Message]]


def assistant(content: str = "", calls: Optional[list[tuple[str, dict]]] = None) -> Message:
    """Build an assistant message, optionally requesting (tool, params) calls."""
    tool_calls = [ToolCall(name=name, parameters=params) for name, params in calls or []]
    return Message(role=Role.ASSISTANT, content=content, tool_calls=tool_calls or None)


class ScriptedProvider(ModelProvider):
    """Replays scripted responses; repeats the last one when the script runs out."""

    name = "scripted"
    display_name = "Scripted"

    def __init__(self, responses: list[Scripted]):
        super().__init__(model="scripted-model", base_url="http://scripted.invalid")
        self.responses = list(responses)
        self.calls: list[dict] = []

    def _next(self, messages: list[Message]) -> Message:
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        response = self.responses[index]
        return response(messages) if callable(response) else response

    async def complete(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7
    ) -> Message:
        self.calls.append({"messages": list(messages), "tools": tools})
        return self._next(messages)

    async def stream(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7
    ) -> AsyncGenerator[StreamChunk, None]:
        self.calls.append({"messages": list(messages), "tools": tools})
        response = self._next(messages)
        for word in response.content.split(" "):
            if word:
                yield StreamChunk(content=word + " ")
        yield StreamChunk(tool_calls=response.tool_calls, done=True)

    async def list_models(self) -> list[str]:
        return [self.model]


@pytest.fixture
def temp_workspace():
    """Create a temporary workspace directory."""
    workspace = tempfile.mkdtemp(prefix="foreman_test_")
    yield Path(workspace).resolve()
    shutil.rmtree(workspace, ignore_errors=True)


@pytest.fixture
def security(temp_workspace):
    """Security settings that allow the temporary workspace only."""
    return SecurityConfig(allowed_directories=[str(temp_workspace)])


@pytest.fixture
def test_config(security):
    """A config for tests: shell and file tools, workspace-only access."""
    config = Config(tools=["shell", "file"], security=security)
    config.memory.save_debounce_ms = 20
    return config
