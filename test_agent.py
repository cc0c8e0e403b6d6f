"""
Agent Tests

Test list:
1. test_send_message_stores_turn - User message and every produced message are stored
2. test_history_has_system_prompt - System prompt and context window are sent
3. test_confirmation_handshake - The phrase approves a root without calling the model
4. test_conversation_management - Load, list, delete, clear
5. test_stream_message - Streaming stores the turn too
6. test_prompt_file - Custom prompt file is used, unreadable file is a ConfigError
7. test_confirmation_phrase_parsing - Punctuation around the root is not part of it
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from agent import Agent
from conftest import ScriptedProvider, assistant
from errors import ConfigError, ConversationNotFound
from schemas import Role


@pytest.fixture
def workspace_cwd(temp_workspace, monkeypatch):
    monkeypatch.chdir(temp_workspace)
    return temp_workspace


# =============================================================================
# TEST 1: Send Message
# =============================================================================

@pytest.mark.asyncio
async def test_send_message_stores_turn(test_config, workspace_cwd):
    """
    Test 1: User message and every produced message are stored.

    Verifies:
    - A conversation is created on demand
    - Tool round trips are recorded in memory
    - The transcript argument receives the produced messages
    """
    provider = ScriptedProvider([
        assistant(calls=[("shell", {"command": "echo hi"})]),
        assistant("The command printed hi."),
    ])
    agent = Agent(test_config, provider=provider)
    transcript = []

    reply = await agent.send_message("Say hi with the shell", transcript=transcript)

    assert reply.content == "The command printed hi."
    assert agent.current_conversation_id is not None
    stored = agent.memory.get_messages(agent.current_conversation_id)
    assert [m.role for m in stored] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
    assert stored[1].tool_results[0].result["output"] == "hi"
    assert len(transcript) == 3

    print("✓ Test 1 passed: Turns are stored in memory")


# =============================================================================
# TEST 2: History
# =============================================================================

@pytest.mark.asyncio
async def test_history_has_system_prompt(test_config, workspace_cwd):
    """
    Test 2: System prompt and context window are sent.

    Verifies:
    - First message is the system prompt with cwd and tool descriptions
    - Earlier turns of the conversation are included
    - Only the configured tools are offered
    """
    provider = ScriptedProvider([assistant("ok")])
    agent = Agent(test_config, provider=provider)
    conv_id = agent.start_new_conversation()

    await agent.send_message("first", conversation_id=conv_id)
    await agent.send_message("second", conversation_id=conv_id)

    sent = provider.calls[1]["messages"]
    assert sent[0].role == Role.SYSTEM
    assert str(workspace_cwd) in sent[0].content
    assert "## shell" in sent[0].content
    assert "## http" not in sent[0].content
    assert [m.content for m in sent[1:]] == ["first", "ok", "second"]
    assert {t.name for t in provider.calls[1]["tools"]} == {"shell", "file"}

    print("✓ Test 2 passed: History includes system prompt and context")


# =============================================================================
# TEST 3: Confirmation
# =============================================================================

@pytest.mark.asyncio
async def test_confirmation_handshake(test_config, workspace_cwd):
    """
    Test 3: The phrase approves a root without calling the model.

    Verifies:
    - A dangerous command is refused with needs_confirmation
    - The confirmation phrase approves the root for the session
    - The model is not called for the confirmation message
    - The approved command then runs
    """
    (workspace_cwd / "old.log").write_text("x")
    provider = ScriptedProvider([
        assistant(calls=[("shell", {"command": "rm old.log"})]),
        assistant("I need your confirmation to run rm."),
        assistant(calls=[("shell", {"command": "rm old.log"})]),
        assistant("Removed old.log."),
    ])
    agent = Agent(test_config, provider=provider)

    await agent.send_message("Delete old.log")
    refused = agent.memory.get_messages(agent.current_conversation_id)[1].tool_results[0]
    assert refused.result["needs_confirmation"] is True
    assert (workspace_cwd / "old.log").exists()

    calls_before = len(provider.calls)
    reply = await agent.send_message("I confirm execution of command: rm")
    assert reply.content == "Approved 'rm'. I can now run it when needed."
    assert len(provider.calls) == calls_before
    assert agent.approvals.is_approved("rm")

    final = await agent.send_message("Go ahead")
    assert final.content == "Removed old.log."
    assert not (workspace_cwd / "old.log").exists()

    print("✓ Test 3 passed: Confirmation handshake approves commands")


# =============================================================================
# TEST 4: Conversations
# =============================================================================

def test_conversation_management(test_config):
    """
    Test 4: Load, list, delete, clear.
    """
    agent = Agent(test_config, provider=ScriptedProvider([assistant("ok")]))
    first = agent.start_new_conversation()
    second = agent.start_new_conversation(make_current=False)
    assert agent.current_conversation_id == first

    assert agent.load_conversation(second).id == second
    assert agent.current_conversation_id == second
    with pytest.raises(ConversationNotFound):
        agent.load_conversation("conv_missing")

    assert len(agent.list_conversations()) == 2
    assert agent.delete_conversation(second) is True
    assert agent.current_conversation_id is None

    agent.clear_conversations()
    assert agent.list_conversations() == []

    print("✓ Test 4 passed: Conversations are managed")


# =============================================================================
# TEST 5: Streaming
# =============================================================================

@pytest.mark.asyncio
async def test_stream_message(test_config, workspace_cwd):
    """
    Test 5: Streaming stores the turn too.
    """
    agent = Agent(test_config, provider=ScriptedProvider([assistant("streamed answer")]))

    chunks = [c async for c in agent.stream_message("hello")]
    assert chunks[-1].done is True
    assert "".join(c.content or "" for c in chunks).strip() == "streamed answer"

    stored = agent.memory.get_messages(agent.current_conversation_id)
    assert [m.role for m in stored] == [Role.USER, Role.ASSISTANT]

    confirm = [c async for c in agent.stream_message("I confirm execution of command: chmod")]
    assert confirm[0].content == "Approved 'chmod'. I can now run it when needed."
    assert confirm[-1].done is True

    print("✓ Test 5 passed: Streaming turns are stored")


# =============================================================================
# TEST 6: System Prompt File
# =============================================================================

def test_prompt_file(test_config, temp_workspace):
    """
    Test 6: Custom prompt file is used, unreadable file is a ConfigError.
    """
    prompt_file = temp_workspace / "prompt.md"
    prompt_file.write_text("You are a custom agent.")
    test_config.system.prompt_file = str(prompt_file)

    agent = Agent(test_config, provider=ScriptedProvider([assistant("ok")]))
    assert agent.get_system_prompt() == "You are a custom agent."

    test_config.system.prompt_file = str(temp_workspace / "missing.md")
    with pytest.raises(ConfigError):
        agent.get_system_prompt()

    print("✓ Test 6 passed: System prompt file is honoured")


# =============================================================================
# TEST 7: Confirmation Phrase Parsing
# =============================================================================

def test_confirmation_phrase_parsing(test_config):
    """
    Test 7: Punctuation around the root is not part of it.

    Verifies:
    - A trailing full stop or quote is dropped
    - Roots with dots keep them
    - Text without the phrase approves nothing
    """
    agent = Agent(test_config, provider=ScriptedProvider([assistant("ok")]))

    assert agent.check_for_command_confirmation("Sure. I confirm execution of command: rm.") == "rm"
    assert agent.check_for_command_confirmation("I confirm execution of command: 'chmod'!") == "chmod"
    assert agent.check_for_command_confirmation("I confirm execution of command: mkfs.ext4") == "mkfs.ext4"
    assert agent.check_for_command_confirmation("please run rm") is None

    assert agent.approvals.is_approved("rm")
    assert not agent.approvals.is_approved("rm.")

    print("✓ Test 7 passed: Confirmation roots are parsed cleanly")
