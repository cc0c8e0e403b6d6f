"""
Interaction Loop Tests

Test list:
1. test_single_call_without_tools - A tool-free first answer costs one completion
2. test_tool_round_trip - Tool calls run, results are folded into the history
3. test_iteration_limit - The loop stops after max_iterations rounds
4. test_tool_errors_are_data - Failing and unavailable tools never stop the turn
5. test_stream_without_tools - Chunks are forwarded, ending with done
6. test_stream_with_tools - Notice chunk, tool execution, wrap-up completion
7. test_failed_command_output_reaches_model - stdout/stderr of a failing command are sent back
"""

import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from conftest import ScriptedProvider, assistant
from loop import EXECUTING_TOOLS_NOTICE, InteractionLoop, format_tool_results
from providers import OpenAIProvider
from schemas import Message, Role, ToolResult
from shell import WorkingDirectory, bind_working_directory, unbind_working_directory
from tools import create_default_registry

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX shell semantics")


@pytest.fixture
def registry(security, temp_workspace):
    token = bind_working_directory(WorkingDirectory(temp_workspace))
    yield create_default_registry(lambda: security)
    unbind_working_directory(token)


def _history(text: str = "Do the thing") -> list[Message]:
    return [
        Message(role=Role.SYSTEM, content="You are a test agent."),
        Message(role=Role.USER, content=text),
    ]


# =============================================================================
# TEST 1: No Tools
# =============================================================================

@pytest.mark.asyncio
async def test_single_call_without_tools(registry):
    """
    Test 1: A tool-free first answer costs one completion.

    Verifies:
    - Exactly one provider call
    - Tool definitions were offered
    - The transcript holds only the final answer
    """
    provider = ScriptedProvider([assistant("All done.")])
    loop = InteractionLoop(provider, registry)
    transcript = []

    final = await loop.run_turn(_history(), registry.get_tools_by_names(["file"]), transcript=transcript)

    assert final.content == "All done."
    assert len(provider.calls) == 1
    assert [t.name for t in provider.calls[0]["tools"]] == ["file"]
    assert transcript == [final]

    no_tools = ScriptedProvider([assistant("Plain.")])
    await InteractionLoop(no_tools, registry).run_turn(_history(), [])
    assert no_tools.calls[0]["tools"] is None

    print("✓ Test 1 passed: One completion for a tool-free answer")


# =============================================================================
# TEST 2: Tool Round Trip
# =============================================================================

@pytest.mark.asyncio
async def test_tool_round_trip(registry, temp_workspace):
    """
    Test 2: Tool calls run, results are folded into the history.

    Verifies:
    - The tool actually ran
    - The second request carries the assistant message with tool_results
      followed by a synthetic tool message
    - The transcript is assistant, tool, final assistant
    """
    provider = ScriptedProvider([
        assistant("Writing the file.", calls=[("file", {"action": "write", "path": "notes.txt", "content": "hi"})]),
        assistant("Wrote notes.txt."),
    ])
    loop = InteractionLoop(provider, registry)
    transcript = []

    final = await loop.run_turn(_history(), registry.get_tools_by_names(["file"]), transcript=transcript)

    assert final.content == "Wrote notes.txt."
    assert (temp_workspace / "notes.txt").read_text() == "hi"
    assert len(provider.calls) == 2

    second_request = provider.calls[1]["messages"]
    assert [m.role for m in second_request] == [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL]
    folded = second_request[2]
    assert folded.tool_results[0].id == folded.tool_calls[0].id
    assert folded.tool_results[0].error is None
    assert second_request[3].content.startswith(f"Tool {folded.tool_calls[0].id} result:")

    assert [m.role for m in transcript] == [Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]

    print("✓ Test 2 passed: Tool results are folded into the history")


# =============================================================================
# TEST 3: Iteration Limit
# =============================================================================

@pytest.mark.asyncio
async def test_iteration_limit(registry):
    """
    Test 3: The loop stops after max_iterations rounds.

    Verifies:
    - A model that always calls tools gets exactly max_iterations completions
    - The last assistant message is returned
    """
    provider = ScriptedProvider([
        assistant("Checking again.", calls=[("file", {"action": "exists", "path": "x"})]),
    ])
    loop = InteractionLoop(provider, registry, max_iterations=3)
    transcript = []

    final = await loop.run_turn(_history(), registry.get_tools_by_names(["file"]), transcript=transcript)

    assert len(provider.calls) == 3
    assert final.content == "Checking again."
    assert final.tool_results is not None
    assert len(transcript) == 6

    print("✓ Test 3 passed: Iteration limit is enforced")


# =============================================================================
# TEST 4: Tool Errors
# =============================================================================

@pytest.mark.asyncio
async def test_tool_errors_are_data(registry):
    """
    Test 4: Failing and unavailable tools never stop the turn.

    Verifies:
    - A failing call yields ToolResult.error
    - A tool that was not offered is rejected without running
    - Later calls in the same message still run
    - The model sees the errors in the tool message
    """
    provider = ScriptedProvider([
        assistant(calls=[
            ("file", {"action": "read", "path": "missing.txt"}),
            ("http", {"url": "https://example.test"}),
            ("file", {"action": "exists", "path": "missing.txt"}),
        ]),
        assistant("The file does not exist."),
    ])
    loop = InteractionLoop(provider, registry)

    final = await loop.run_turn(_history(), registry.get_tools_by_names(["file"]))
    assert final.content == "The file does not exist."

    folded = provider.calls[1]["messages"][2]
    errors = [r.error for r in folded.tool_results]
    assert errors[0] == "File not found: missing.txt"
    assert errors[1] == "Tool not available: http"
    assert errors[2] is None
    assert folded.tool_results[2].result["exists"] is False

    tool_text = provider.calls[1]["messages"][3].content
    assert "error: File not found: missing.txt" in tool_text

    text = format_tool_results([ToolResult(id="a", result={"ok": 1}), ToolResult(id="b", error="boom")])
    assert text == 'Tool a result: {\n  "ok": 1\n}\n\nTool b error: boom'

    print("✓ Test 4 passed: Tool errors are returned to the model")


# =============================================================================
# TEST 5: Streaming
# =============================================================================

@pytest.mark.asyncio
async def test_stream_without_tools(registry):
    """
    Test 5: Chunks are forwarded, ending with done.
    """
    provider = ScriptedProvider([assistant("hello there friend")])
    loop = InteractionLoop(provider, registry)
    transcript = []

    chunks = [c async for c in loop.stream_turn(_history(), registry.get_tools_by_names(["file"]), transcript)]

    assert chunks[-1].done is True
    assert "".join(c.content or "" for c in chunks) == "hello there friend "
    assert len(provider.calls) == 1
    assert transcript[0].content == "hello there friend "

    print("✓ Test 5 passed: Streaming forwards chunks")


# =============================================================================
# TEST 6: Streaming With Tools
# =============================================================================

@pytest.mark.asyncio
async def test_stream_with_tools(registry, temp_workspace):
    """
    Test 6: Notice chunk, tool execution, wrap-up completion.

    Verifies:
    - The notice chunk carries the requested tool calls
    - Tools ran before the wrap-up completion
    - The wrap-up completion is requested without tools
    """
    provider = ScriptedProvider([
        assistant("Creating.", calls=[("file", {"action": "mkdir", "path": "out"})]),
        assistant("Created the directory."),
    ])
    loop = InteractionLoop(provider, registry)
    transcript = []

    chunks = [c async for c in loop.stream_turn(_history(), registry.get_tools_by_names(["file"]), transcript)]

    notice = [c for c in chunks if c.content == EXECUTING_TOOLS_NOTICE]
    assert len(notice) == 1
    assert notice[0].tool_calls[0].name == "file"
    assert (temp_workspace / "out").is_dir()
    assert provider.calls[1]["tools"] is None
    assert chunks[-1].done is True
    assert "Created the directory." in "".join(c.content or "" for c in chunks)
    assert [m.role for m in transcript] == [Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]

    print("✓ Test 6 passed: Streaming runs tools and wraps up")


# =============================================================================
# TEST 7: Failing Command Output
# =============================================================================

@posix_only
@pytest.mark.asyncio
async def test_failed_command_output_reaches_model(registry):
    """
    Test 7: stdout/stderr of a failing command are sent back.

    Verifies:
    - A non-zero exit is a ToolResult.error that keeps the shell payload
    - The synthetic tool message carries the error and both streams
    - The provider wire format carries both streams too
    """
    provider = ScriptedProvider([
        assistant("Building.", calls=[("shell", {"command": "echo BUILD_LOG_LINE; echo TRACE >&2; exit 3"})]),
        assistant("The build failed."),
    ])
    loop = InteractionLoop(provider, registry)

    final = await loop.run_turn(_history("Build it"), registry.get_tools_by_names(["shell"]))
    assert final.content == "The build failed."

    folded = provider.calls[1]["messages"][2]
    result = folded.tool_results[0]
    assert result.error == "Command exited with code 3"
    assert result.result["exit_code"] == 3
    assert "BUILD_LOG_LINE" in result.result["stdout"]
    assert "TRACE" in result.result["stderr"]

    tool_text = provider.calls[1]["messages"][3].content
    assert tool_text.startswith(f"Tool {result.id} error: Command exited with code 3\n")
    assert "BUILD_LOG_LINE" in tool_text
    assert "TRACE" in tool_text

    wire = OpenAIProvider(api_key="sk-test").format_messages(provider.calls[1]["messages"])
    tool_entry = [m for m in wire if m["role"] == "tool"][0]
    assert tool_entry["tool_call_id"] == result.id
    assert tool_entry["content"].startswith("Error: Command exited with code 3\n")
    assert "BUILD_LOG_LINE" in tool_entry["content"]
    assert "TRACE" in tool_entry["content"]

    print("✓ Test 7 passed: Failing command output reaches the model")
