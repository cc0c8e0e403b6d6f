"""
Interaction Loop ("ReAct loop") for Foreman.

WHAT THIS FILE DOES:
-------------------
Turns one user turn into a final assistant answer, letting the model call
tools along the way:

    AwaitingCompletion ──no tool calls──> Done
           │
       tool calls
           ▼
    ExecutingTools ──results folded into history──> AwaitingCompletion
           │
    iteration limit (5)
           ▼
    Done (last assistant message, logged as a warning)

Each round appends two messages to the working history: the assistant
message (with its tool calls and their results) and a synthetic "tool"
message summarizing the results in text:

    Tool call_1 result: {
      "success": true,
      ...
    }

    Tool call_2 error: Command blocked for security reasons: shutdown

Tool calls from one assistant message run one after another, in the order
the model listed them. A failing call never stops the others.
"""

import json
import logging
from typing import AsyncGenerator, Optional

from providers import ModelProvider
from schemas import Message, Role, StreamChunk, ToolCall, ToolResult
from tools import BaseTool, ToolRegistry

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 5
EXECUTING_TOOLS_NOTICE = "\n\n[Executing tools...]\n\n"


def format_tool_results(results: list[ToolResult]) -> str:
    """Render tool results as the text of the synthetic tool message."""
    parts = []
    for result in results:
        if result.error and result.result is not None:
            # The payload carries stdout/stderr of failed commands.
            parts.append(
                f"Tool {result.id} error: {result.error}\n{json.dumps(result.result, indent=2, default=str)}"
            )
        elif result.error:
            parts.append(f"Tool {result.id} error: {result.error}")
        else:
            parts.append(f"Tool {result.id} result: {json.dumps(result.result, indent=2, default=str)}")
    return "\n\n".join(parts)


class InteractionLoop:
    """
    Drives completion/tool round trips for one turn.

    Example usage:
        loop = InteractionLoop(provider, registry)
        answer = await loop.run_turn(history, registry.get_tools_by_names(["shell"]))
    """

    def __init__(
        self,
        provider: ModelProvider,
        registry: ToolRegistry,
        max_iterations: int = MAX_ITERATIONS,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.provider = provider
        self.registry = registry
        self.max_iterations = max_iterations
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def execute_tools(self, calls: list[ToolCall], tools: list[BaseTool]) -> list[ToolResult]:
        """
        Run tool calls sequentially, converting failures into ToolResult.error.

        Calls naming a tool outside `tools` are rejected without running.
        """
        offered = {tool.name for tool in tools}
        results = []
        for call in calls:
            if call.name not in offered:
                results.append(ToolResult(id=call.id, error=f"Tool not available: {call.name}"))
                continue

            logger.info("Calling tool %s %s", call.name, call.parameters)
            outcome = await self.registry.execute(call.name, call.parameters)
            if isinstance(outcome, dict) and outcome.get("success") is False and outcome.get("error"):
                results.append(ToolResult(id=call.id, result=outcome, error=outcome["error"]))
            else:
                results.append(ToolResult(id=call.id, result=outcome))
        return results

    def _fold(self, assistant: Message, results: list[ToolResult]) -> tuple[Message, Message]:
        answered = assistant.model_copy(update={"tool_results": results})
        tool_message = Message(
            role=Role.TOOL,
            content=format_tool_results(results),
            tool_results=results,
        )
        return answered, tool_message

    async def run_turn(
        self,
        history: list[Message],
        tools: list[BaseTool],
        transcript: Optional[list[Message]] = None,
    ) -> Message:
        """
        Run completion/tool rounds until the model answers without tools.

        Args:
            history: Messages to send (system prompt included)
            tools: Tools the model may call in this turn
            transcript: If given, every message produced is appended to it

        Returns:
            The final assistant message, or the last one produced if the
            iteration limit was reached

        Raises:
            ProviderError: If a completion request fails
        """
        messages = list(history)
        definitions = [tool.definition for tool in tools]
        last_assistant: Optional[Message] = None

        for iteration in range(1, self.max_iterations + 1):
            response = await self.provider.complete(
                messages,
                tools=definitions or None,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )

            if not response.tool_calls:
                if transcript is not None:
                    transcript.append(response)
                return response

            logger.debug("Iteration %d: %d tool call(s)", iteration, len(response.tool_calls))
            results = await self.execute_tools(response.tool_calls, tools)
            last_assistant, tool_message = self._fold(response, results)
            messages.extend([last_assistant, tool_message])
            if transcript is not None:
                transcript.extend([last_assistant, tool_message])

        logger.warning("Reached the limit of %d iterations without a final answer", self.max_iterations)
        return last_assistant

    async def stream_turn(
        self,
        history: list[Message],
        tools: list[BaseTool],
        transcript: Optional[list[Message]] = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """
        Streaming variant of run_turn.

        Yields the model's chunks as they arrive. If the model requested
        tools, they run once the stream completes, a notice chunk is
        yielded, and one more completion (without tools) streams the
        wrap-up answer.
        """
        messages = list(history)
        definitions = [tool.definition for tool in tools]

        content_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        async for chunk in self.provider.stream(
            messages,
            tools=definitions or None,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        ):
            if chunk.tool_calls:
                tool_calls.extend(chunk.tool_calls)
            if chunk.content:
                content_parts.append(chunk.content)
                yield StreamChunk(content=chunk.content)
            if chunk.done:
                break

        assistant = Message(
            role=Role.ASSISTANT,
            content="".join(content_parts),
            tool_calls=tool_calls or None,
        )
        if not tool_calls:
            if transcript is not None:
                transcript.append(assistant)
            yield StreamChunk(done=True)
            return

        yield StreamChunk(content=EXECUTING_TOOLS_NOTICE, tool_calls=tool_calls)
        results = await self.execute_tools(tool_calls, tools)
        assistant, tool_message = self._fold(assistant, results)
        messages.extend([assistant, tool_message])
        if transcript is not None:
            transcript.extend([assistant, tool_message])

        final_parts: list[str] = []
        async for chunk in self.provider.stream(
            messages,
            tools=None,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        ):
            if chunk.content:
                final_parts.append(chunk.content)
                yield StreamChunk(content=chunk.content)
            if chunk.done:
                break

        if transcript is not None:
            transcript.append(Message(role=Role.ASSISTANT, content="".join(final_parts)))
        yield StreamChunk(done=True)
