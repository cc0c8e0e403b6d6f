"""
Model provider integrations for Foreman.

WHAT THIS FILE DOES:
-------------------
Talks to the LLM completion service. Every provider speaks our Message /
ToolCall / StreamChunk types on the outside and its own wire format on the
inside:

    loop.py ──Message list + ToolDefinitions──> provider ──HTTP──> API
            <──Message (content and/or tool_calls)──

HOW EACH PROVIDER HANDLES TOOLS:
-------------------------------
1. OpenAI (and any OpenAI-compatible server): native function calling.
   Tools go out as {"type": "function", "function": {...}} and calls come
   back with JSON-encoded argument strings. When streaming, a call arrives
   in fragments keyed by index; we stitch them together and emit the
   finished calls with the final chunk.

2. Ollama: /api/chat with a "tools" list. Arguments come back as objects
   and calls carry no ids, so we generate them.

ERRORS:
------
Any HTTP or connection failure becomes ProviderError("<Provider> API error:
<upstream message>"). There is no retry here; the interaction loop and the
scheduler decide what a failed turn means.
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, Optional

import httpx

from config import ProviderConfig
from errors import ConfigError, ProviderError
from schemas import Message, Role, StreamChunk, ToolCall, ToolDefinition, ToolResult, new_id


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def extract_json_from_text(text: str) -> str:
    """
    Extract JSON from text that might have markdown code blocks or extra content.

    Models sometimes return:
        Here's the plan:
        ```json
        {"steps": [...]}
        ```

    This extracts just the JSON part.
    """
    # Try to find JSON in code blocks first
    code_block_match = re.search(r'```(?:json)?\s*([\s\S]*?)```', text)
    if code_block_match:
        return code_block_match.group(1).strip()

    # Try to find raw JSON (starts with { or [)
    json_match = re.search(r'(\{[\s\S]*\}|\[[\s\S]*\])', text)
    if json_match:
        return json_match.group(1)

    # Return original text and let JSON parser fail with good error
    return text


def _result_text(result: ToolResult) -> str:
    if result.error and result.result is not None:
        return f"Error: {result.error}\n{json.dumps(result.result, default=str)}"
    if result.error:
        return f"Error: {result.error}"
    return json.dumps(result.result, default=str)


def _error_detail(response: httpx.Response) -> str:
    """Best-effort upstream error message from an error response."""
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    if isinstance(error, str):
        return error
    return response.text or f"HTTP {response.status_code}"


# =============================================================================
# BASE PROVIDER
# =============================================================================

class ModelProvider(ABC):
    """
    Base class for model providers.

    All providers must implement:
    - complete(): one completion, possibly requesting tool calls
    - stream(): the same, yielded as StreamChunks
    - list_models(): what the service offers
    """

    name = "base"
    display_name = "Provider"

    def __init__(
        self,
        model: str,
        base_url: str,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _api_error(self, error: Exception) -> ProviderError:
        status_code = None
        detail = str(error) or error.__class__.__name__
        if isinstance(error, httpx.HTTPStatusError):
            status_code = error.response.status_code
            detail = _error_detail(error.response)
        return ProviderError(
            f"{self.display_name} API error: {detail}",
            provider=self.name,
            status_code=status_code,
        )

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7
    ) -> Message:
        """
        Generate one assistant message.

        Returns:
            Message with role=assistant, content and optional tool_calls

        Raises:
            ProviderError: On any transport or API failure
        """

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7
    ) -> AsyncGenerator[StreamChunk, None]:
        """Stream a completion. The last chunk has done=True and carries any tool calls."""

    @abstractmethod
    async def list_models(self) -> list[str]:
        """List available models from this provider."""


# =============================================================================
# OPENAI PROVIDER (and OpenAI-compatible servers)
# =============================================================================

class OpenAIProvider(ModelProvider):
    """
    OpenAI chat completions with native function calling.

    Tool results are sent back as one "tool" message per call id, which is
    what the API requires after an assistant message with tool_calls.
    """

    name = "openai"
    display_name = "OpenAI"

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(model, base_url, timeout=timeout, transport=transport)
        if not api_key:
            raise ConfigError("OpenAI API key is required (set OPENAI_API_KEY)")
        self.api_key = api_key

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

    def _get_token_param(self, max_tokens: int) -> dict:
        """
        Get the correct token limit parameter for the model.
        Newer models use 'max_completion_tokens', older ones 'max_tokens'.
        """
        if self.model.startswith(("gpt-5", "o1", "o3", "o4")):
            return {"max_completion_tokens": max_tokens}
        return {"max_tokens": max_tokens}

    def format_tools(self, tools: list[ToolDefinition]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.json_schema(),
                },
            }
            for tool in tools
        ]

    def format_messages(self, messages: list[Message]) -> list[dict]:
        """
        Convert our messages to the chat format.

        An assistant message only keeps its tool_calls when the next message
        carries their results; otherwise the API would reject the history.
        """
        formatted = []
        expand_results = False
        for index, message in enumerate(messages):
            if message.role == Role.TOOL:
                if expand_results and message.tool_results:
                    for result in message.tool_results:
                        formatted.append({
                            "role": "tool",
                            "tool_call_id": result.id,
                            "content": _result_text(result),
                        })
                else:
                    formatted.append({"role": "user", "content": message.content})
                expand_results = False
                continue

            entry: dict[str, Any] = {"role": message.role.value, "content": message.content}
            following = messages[index + 1] if index + 1 < len(messages) else None
            expand_results = bool(
                message.role == Role.ASSISTANT
                and message.tool_calls
                and following is not None
                and following.role == Role.TOOL
                and following.tool_results
            )
            if expand_results:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.parameters)},
                    }
                    for call in message.tool_calls
                ]
            formatted.append(entry)
        return formatted

    def _payload(self, messages, tools, max_tokens, temperature, stream: bool) -> dict:
        payload = {
            "model": self.model,
            "messages": self.format_messages(messages),
            "temperature": temperature,
            **self._get_token_param(max_tokens)
        }
        if tools:
            payload["tools"] = self.format_tools(tools)
            payload["tool_choice"] = "auto"
        if stream:
            payload["stream"] = True
        return payload

    def _parse_arguments(self, raw: Any) -> dict:
        if isinstance(raw, dict):
            return raw
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ProviderError(f"OpenAI API error: invalid tool arguments: {e}", provider=self.name) from e
        if not isinstance(parsed, dict):
            raise ProviderError("OpenAI API error: tool arguments must be a JSON object", provider=self.name)
        return parsed

    async def complete(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7
    ) -> Message:
        """Chat completion, possibly with tool calls."""
        payload = self._payload(messages, tools, max_tokens, temperature, stream=False)
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise self._api_error(e) from e

        try:
            choice = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("OpenAI API error: unexpected response format", provider=self.name) from e

        tool_calls = [
            ToolCall(
                id=call.get("id") or new_id("call"),
                name=call["function"]["name"],
                parameters=self._parse_arguments(call["function"].get("arguments")),
            )
            for call in choice.get("tool_calls") or []
        ]
        return Message(
            role=Role.ASSISTANT,
            content=choice.get("content") or "",
            tool_calls=tool_calls or None,
        )

    async def stream(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7
    ) -> AsyncGenerator[StreamChunk, None]:
        """Streaming completion over server-sent events."""
        payload = self._payload(messages, tools, max_tokens, temperature, stream=True)
        fragments: dict[int, dict] = {}
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json=payload,
                ) as response:
                    if response.is_error:
                        await response.aread()
                        response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.startswith("data: "):
                            continue
                        data_str = line[6:].strip()
                        if data_str == "[DONE]":
                            break
                        data = json.loads(data_str)
                        choices = data.get("choices") or []
                        if not choices:
                            continue
                        delta = choices[0].get("delta") or {}
                        if delta.get("content"):
                            yield StreamChunk(content=delta["content"])
                        for fragment in delta.get("tool_calls") or []:
                            slot = fragments.setdefault(
                                fragment.get("index", 0), {"id": None, "name": "", "arguments": ""}
                            )
                            if fragment.get("id"):
                                slot["id"] = fragment["id"]
                            function = fragment.get("function") or {}
                            if function.get("name"):
                                slot["name"] = function["name"]
                            if function.get("arguments"):
                                slot["arguments"] += function["arguments"]
        except httpx.HTTPError as e:
            raise self._api_error(e) from e
        except json.JSONDecodeError as e:
            raise ProviderError(f"OpenAI API error: malformed stream data: {e}", provider=self.name) from e

        tool_calls = [
            ToolCall(
                id=slot["id"] or new_id("call"),
                name=slot["name"],
                parameters=self._parse_arguments(slot["arguments"]),
            )
            for _, slot in sorted(fragments.items())
        ]
        yield StreamChunk(tool_calls=tool_calls or None, done=True)

    async def list_models(self) -> list[str]:
        """List available models from OpenAI."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/models", headers=self._headers())
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise self._api_error(e) from e
        return sorted(m["id"] for m in data.get("data", []))


# =============================================================================
# OLLAMA PROVIDER (local models)
# =============================================================================

class OllamaProvider(ModelProvider):
    """
    Ollama local model provider (/api/chat).

    Tool support depends on the model; models without it simply answer in
    text, which the interaction loop treats as a final answer.
    """

    name = "ollama"
    display_name = "Ollama"

    def __init__(
        self,
        model: str = "qwen3:4b",
        base_url: str = "http://localhost:11434",
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        base_url = base_url.rstrip("/")
        if base_url.endswith("/api"):
            base_url = base_url[:-4]
        super().__init__(model, base_url, timeout=timeout, transport=transport)

    def format_tools(self, tools: list[ToolDefinition]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.json_schema(),
                },
            }
            for tool in tools
        ]

    def format_messages(self, messages: list[Message]) -> list[dict]:
        formatted = []
        for message in messages:
            if message.role == Role.TOOL and message.tool_results:
                for result in message.tool_results:
                    formatted.append({"role": "tool", "content": _result_text(result)})
                continue
            entry: dict[str, Any] = {"role": message.role.value, "content": message.content}
            if message.role == Role.ASSISTANT and message.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": call.name, "arguments": call.parameters}}
                    for call in message.tool_calls
                ]
            formatted.append(entry)
        return formatted

    def _payload(self, messages, tools, max_tokens, temperature, stream: bool) -> dict:
        payload = {
            "model": self.model,
            "messages": self.format_messages(messages),
            "options": {
                "num_predict": max_tokens,
                "temperature": temperature
            },
            "stream": stream,
        }
        if tools:
            payload["tools"] = self.format_tools(tools)
        return payload

    def _parse_tool_calls(self, raw_calls: list) -> list[ToolCall]:
        calls = []
        for raw in raw_calls or []:
            function = raw.get("function") or {}
            arguments = function.get("arguments") or {}
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError as e:
                    raise ProviderError(f"Ollama API error: invalid tool arguments: {e}", provider=self.name) from e
            calls.append(ToolCall(
                id=raw.get("id") or new_id("call"),
                name=function.get("name", ""),
                parameters=arguments,
            ))
        return calls

    async def complete(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7
    ) -> Message:
        """Chat completion, possibly with tool calls."""
        payload = self._payload(messages, tools, max_tokens, temperature, stream=False)
        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise self._api_error(e) from e

        message = data.get("message") or {}
        tool_calls = self._parse_tool_calls(message.get("tool_calls"))
        return Message(
            role=Role.ASSISTANT,
            content=message.get("content") or "",
            tool_calls=tool_calls or None,
        )

    async def stream(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7
    ) -> AsyncGenerator[StreamChunk, None]:
        """Streaming completion over newline-delimited JSON."""
        payload = self._payload(messages, tools, max_tokens, temperature, stream=True)
        tool_calls: list[ToolCall] = []
        try:
            async with self._client() as client:
                async with client.stream("POST", f"{self.base_url}/api/chat", json=payload) as response:
                    if response.is_error:
                        await response.aread()
                        response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        data = json.loads(line)
                        message = data.get("message") or {}
                        if message.get("content"):
                            yield StreamChunk(content=message["content"])
                        tool_calls.extend(self._parse_tool_calls(message.get("tool_calls")))
                        if data.get("done"):
                            break
        except httpx.HTTPError as e:
            raise self._api_error(e) from e
        except json.JSONDecodeError as e:
            raise ProviderError(f"Ollama API error: malformed stream data: {e}", provider=self.name) from e

        yield StreamChunk(tool_calls=tool_calls or None, done=True)

    async def list_models(self) -> list[str]:
        """List available models from Ollama."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise self._api_error(e) from e
        return [m["name"] for m in data.get("models", [])]


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def get_provider(config: ProviderConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> ModelProvider:
    """
    Get a provider instance from config.

    This is how the rest of the system gets providers without
    knowing the implementation details.

    Raises:
        ConfigError: For an unknown provider type or a missing API key
    """
    if config.type == "openai":
        return OpenAIProvider(
            model=config.model,
            api_key=config.get_api_key(),
            base_url=config.base_url or "https://api.openai.com/v1",
            timeout=config.timeout,
            transport=transport,
        )
    if config.type == "ollama":
        return OllamaProvider(
            model=config.model,
            base_url=config.base_url or "http://localhost:11434",
            timeout=config.timeout,
            transport=transport,
        )
    raise ConfigError(f"Unknown provider type: '{config.type}'. Must be one of: openai, ollama")
