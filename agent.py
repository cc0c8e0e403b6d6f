"""
Agent session facade for Foreman.

WHAT THIS FILE DOES:
-------------------
Glues the pieces together for one user-facing agent:

    user text ──> memory (append) ──> context window + system prompt
              ──> InteractionLoop (completions + tools)
              ──> memory (append everything the turn produced) ──> answer

It also owns the command-confirmation handshake. When the shell tool
refuses a dangerous command, the model is told to ask the user for the
phrase "I confirm execution of command: <root>". When the user sends that
phrase, the root is approved for the rest of the session and the model is
not called at all.
"""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import AsyncGenerator, Optional

from config import Config
from errors import ConfigError, ConversationNotFound
from loop import InteractionLoop
from memory import ConversationMemory, create_memory
from providers import ModelProvider, get_provider
from schemas import Conversation, Message, Role, StreamChunk
from shell import ApprovalRegistry, current_working_directory
from tools import BaseTool, ToolRegistry, create_default_registry

logger = logging.getLogger(__name__)

CONFIRMATION_PATTERN = re.compile(r"I confirm execution of command\s*[:：]\s*[\"'`]?(\w[\w.-]*\w|\w)", re.IGNORECASE)

DEFAULT_SYSTEM_PROMPT = """You are Foreman, an autonomous software engineering agent working in a terminal.

Current working directory: {cwd}
Current date: {date}

You can act on the user's machine through tools. Use them to inspect the
project before changing it, and verify your work by running commands.

{tools_prompt}
Guidelines:
- Prefer small, verifiable steps. Read files before editing them.
- Report command failures honestly, including the relevant output.
- Some commands are refused or need the user's confirmation. If a tool result
  says confirmation is needed, ask the user to reply with the exact phrase it
  gives and do not retry until they have.
- When you are done, answer in plain language without calling more tools.
"""


class Agent:
    """
    One agent: provider, tools, memory and the interaction loop.

    Example usage:
        agent = Agent(load_config())
        answer = await agent.send_message("List the Python files here")
        print(answer.content)
    """

    def __init__(
        self,
        config: Config,
        provider: Optional[ModelProvider] = None,
        memory: Optional[ConversationMemory] = None,
        registry: Optional[ToolRegistry] = None,
        approvals: Optional[ApprovalRegistry] = None,
    ):
        self.config = config
        self.approvals = approvals if approvals is not None else ApprovalRegistry()
        self.provider = provider or get_provider(config.provider)
        self.memory = memory or create_memory(
            config.memory.persistent,
            path=config.memory.file_path,
            max_context_length=config.memory.max_context_length,
            debounce_ms=config.memory.save_debounce_ms,
        )
        self.registry = registry or create_default_registry(
            lambda: self.config.security,
            approvals=self.approvals,
        )
        self.loop = InteractionLoop(
            self.provider,
            self.registry,
            max_iterations=config.scheduler.max_iterations,
            max_tokens=config.provider.max_tokens,
            temperature=config.provider.temperature,
        )
        self.current_conversation_id: Optional[str] = None

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    def start_new_conversation(self, make_current: bool = True) -> str:
        """Create a conversation; by default it becomes the current one."""
        conversation_id = self.memory.create_conversation(
            provider=self.provider.name, model=self.provider.model
        )
        if make_current:
            self.current_conversation_id = conversation_id
        return conversation_id

    def load_conversation(self, conversation_id: str) -> Conversation:
        """
        Make an existing conversation current.

        Raises:
            ConversationNotFound: If the id is unknown
        """
        conversation = self.memory.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        self.current_conversation_id = conversation_id
        return conversation

    def list_conversations(self) -> list[Conversation]:
        return self.memory.list_conversations()

    def delete_conversation(self, conversation_id: str) -> bool:
        if conversation_id == self.current_conversation_id:
            self.current_conversation_id = None
        return self.memory.delete_conversation(conversation_id)

    def clear_conversations(self) -> None:
        self.memory.clear_all()
        self.current_conversation_id = None

    def _resolve_conversation(self, conversation_id: Optional[str]) -> str:
        if conversation_id:
            return conversation_id
        if self.current_conversation_id is None:
            return self.start_new_conversation()
        return self.current_conversation_id

    # -------------------------------------------------------------------------
    # Prompting
    # -------------------------------------------------------------------------

    def available_tools(self) -> list[BaseTool]:
        """Tools enabled in the config."""
        return self.registry.get_tools_by_names(self.config.tools)

    def get_system_prompt(self) -> str:
        """
        The custom prompt file if configured, else the built-in prompt.

        Raises:
            ConfigError: If the configured prompt file cannot be read
        """
        prompt_file = self.config.system.prompt_file
        if prompt_file:
            try:
                return Path(prompt_file).expanduser().read_text()
            except OSError as e:
                raise ConfigError(f"Cannot read system prompt file {prompt_file}: {e}") from e

        return DEFAULT_SYSTEM_PROMPT.format(
            cwd=current_working_directory().path,
            date=datetime.now().strftime("%Y-%m-%d"),
            tools_prompt=self.registry.get_tools_prompt(self.config.tools),
        )

    def _build_history(self, conversation_id: str) -> list[Message]:
        window = self.memory.get_context_window(
            conversation_id, self.config.memory.context_window_tokens
        )
        return [Message(role=Role.SYSTEM, content=self.get_system_prompt()), *window]

    # -------------------------------------------------------------------------
    # Command approval
    # -------------------------------------------------------------------------

    def approve_shell_command(self, command: str) -> str:
        """Approve a command's root for this session. Returns the root."""
        return self.approvals.approve(command)

    def check_for_command_confirmation(self, content: str) -> Optional[str]:
        """Approve and return the root if content contains the confirmation phrase."""
        match = CONFIRMATION_PATTERN.search(content)
        if not match:
            return None
        return self.approve_shell_command(match.group(1))

    def _acknowledge_confirmation(self, conversation_id: str, content: str) -> Optional[Message]:
        approved = self.check_for_command_confirmation(content)
        if approved is None:
            return None
        reply = Message(
            role=Role.ASSISTANT,
            content=f"Approved '{approved}'. I can now run it when needed.",
        )
        self.memory.add_message(conversation_id, reply)
        return reply

    # -------------------------------------------------------------------------
    # Turns
    # -------------------------------------------------------------------------

    async def send_message(
        self,
        content: str,
        conversation_id: Optional[str] = None,
        transcript: Optional[list[Message]] = None,
    ) -> Message:
        """
        Run one turn and return the final assistant message.

        Args:
            content: User message text
            conversation_id: Conversation to use (current/new if None)
            transcript: If given, receives every message the turn produced

        Raises:
            ConversationNotFound: If conversation_id is unknown
            ProviderError: If the completion service fails
        """
        conversation_id = self._resolve_conversation(conversation_id)
        self.memory.add_message(conversation_id, Message(role=Role.USER, content=content))

        acknowledgement = self._acknowledge_confirmation(conversation_id, content)
        if acknowledgement is not None:
            return acknowledgement

        produced: list[Message] = []
        final = await self.loop.run_turn(
            self._build_history(conversation_id),
            self.available_tools(),
            transcript=produced,
        )
        for message in produced:
            self.memory.add_message(conversation_id, message)
        if transcript is not None:
            transcript.extend(produced)
        return final

    async def stream_message(
        self,
        content: str,
        conversation_id: Optional[str] = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Streaming variant of send_message."""
        conversation_id = self._resolve_conversation(conversation_id)
        self.memory.add_message(conversation_id, Message(role=Role.USER, content=content))

        acknowledgement = self._acknowledge_confirmation(conversation_id, content)
        if acknowledgement is not None:
            yield StreamChunk(content=acknowledgement.content)
            yield StreamChunk(done=True)
            return

        produced: list[Message] = []
        async for chunk in self.loop.stream_turn(
            self._build_history(conversation_id),
            self.available_tools(),
            transcript=produced,
        ):
            yield chunk
        for message in produced:
            self.memory.add_message(conversation_id, message)

    def close(self) -> None:
        """Flush and release the memory store."""
        self.memory.close()
