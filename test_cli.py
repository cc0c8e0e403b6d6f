"""
CLI Tests

Test list:
1. test_parser - Subcommands and options parse as expected
2. test_chat_resumes_conversation - chat --conversation continues a stored conversation
3. test_chat_unknown_conversation - An unknown id is a ConversationNotFound
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

import ui
from cli import create_parser, run_chat
from conftest import ScriptedProvider, assistant
from errors import ConversationNotFound
from memory import PersistentConversationMemory
from schemas import Message, Role


@pytest.fixture
def stored_conversation(test_config, temp_workspace):
    """A memory file holding one earlier exchange. Returns its id."""
    test_config.memory.file = str(temp_workspace / "memory.json")
    memory = PersistentConversationMemory(test_config.memory.file_path, debounce_ms=20)
    conversation_id = memory.create_conversation()
    memory.add_message(conversation_id, Message(role=Role.USER, content="My name is Ada"))
    memory.add_message(conversation_id, Message(role=Role.ASSISTANT, content="Hello Ada"))
    memory.close()
    return conversation_id


# =============================================================================
# TEST 1: Parser
# =============================================================================

def test_parser():
    """
    Test 1: Subcommands and options parse as expected.
    """
    parser = create_parser()

    chat = parser.parse_args(["chat", "-c", "conv_abc", "--no-stream"])
    assert chat.command == "chat"
    assert chat.conversation == "conv_abc"
    assert chat.no_stream is True

    assert parser.parse_args(["chat"]).conversation is None

    run = parser.parse_args(["--debug", "run", "--goal", "Build it"])
    assert run.goal == "Build it"
    assert run.debug is True

    exec_args = parser.parse_args(["exec", "ls -la", "--timeout", "500"])
    assert exec_args.shell_command == "ls -la"
    assert exec_args.timeout == 500

    print("✓ Test 1 passed: Arguments parse")


# =============================================================================
# TEST 2: Resume a Conversation
# =============================================================================

@pytest.mark.asyncio
async def test_chat_resumes_conversation(test_config, stored_conversation, monkeypatch):
    """
    Test 2: chat --conversation continues a stored conversation.

    Verifies:
    - The earlier messages are sent to the model as context
    - The new exchange is appended to the same stored conversation
    - This works with memory.persistent left off
    """
    provider = ScriptedProvider([assistant("Your name is Ada")])
    monkeypatch.setattr("agent.get_provider", lambda config: provider)
    inputs = iter(["What is my name?", "exit"])
    monkeypatch.setattr(ui.console, "input", lambda prompt="": next(inputs))
    assert test_config.memory.persistent is False

    assert await run_chat(test_config, stream=False, conversation_id=stored_conversation) == 0

    sent = provider.calls[0]["messages"]
    assert sent[0].role == Role.SYSTEM
    assert [m.content for m in sent[1:]] == ["My name is Ada", "Hello Ada", "What is my name?"]

    reloaded = PersistentConversationMemory(test_config.memory.file_path)
    contents = [m.content for m in reloaded.get_messages(stored_conversation)]
    assert contents == ["My name is Ada", "Hello Ada", "What is my name?", "Your name is Ada"]
    reloaded.close()

    print("✓ Test 2 passed: Stored conversations can be resumed")


# =============================================================================
# TEST 3: Unknown Conversation
# =============================================================================

@pytest.mark.asyncio
async def test_chat_unknown_conversation(test_config, stored_conversation, monkeypatch):
    """
    Test 3: An unknown id is a ConversationNotFound.
    """
    monkeypatch.setattr("agent.get_provider", lambda config: ScriptedProvider([assistant("unused")]))

    with pytest.raises(ConversationNotFound) as exc_info:
        await run_chat(test_config, conversation_id="conv_missing")
    assert str(exc_info.value) == "Conversation not found: conv_missing"

    print("✓ Test 3 passed: Unknown conversation ids are reported")
