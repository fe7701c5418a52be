# orchestrator.py
"""
Tool-calling turn driver.

Protocol:
  1. DECIDING: send the conversation with tool declarations (non-streaming).
  2. If finish_reason == "tool_calls": record the assistant message, run each
     call in order (EXECUTING), append the results and decide again.
  3. At most MAX_ROUNDS decision rounds.
  4. FINALIZING: one streaming request without tools, so the model has to
     answer in prose using whatever the tools returned.

Transport errors abort the turn. Tool failures become tool messages.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import orjson
import structlog

from api import ChatRequest, send_chat_stream, send_chat_with_tools
from config import ProviderConfig
from errors import ToolArgumentDecodeError, TransportError
from streaming import parse_sse_stream
from tools import ToolRegistry, default_registry

log = structlog.get_logger(__name__)

MAX_ROUNDS = 3


@dataclass
class ToolRunResult:
    response: httpx.Response
    # Assistant/tool messages synthesized during the loop, in order. Informational.
    tool_messages: List[Dict[str, Any]] = field(default_factory=list)
    # The exact list sent with the finalization request.
    messages: List[Dict[str, Any]] = field(default_factory=list)
    rounds: int = 0

    def tokens(self) -> AsyncIterator[str]:
        return parse_sse_stream(self.response)


def _decode_arguments(name: str, raw: Any) -> Dict[str, Any]:
    # Some servers (Ollama's native API) already send an object
    if isinstance(raw, dict):
        return raw
    if raw is None or raw == "":
        return {}
    try:
        return orjson.loads(raw)
    except (orjson.JSONDecodeError, TypeError) as e:
        raise ToolArgumentDecodeError(f'Invalid JSON arguments for tool "{name}"', tool=name) from e


async def execute_tool_call(call: Dict[str, Any], registry: ToolRegistry) -> Dict[str, Any]:
    """Run one tool call and wrap its result as a tool message. Never raises."""
    fn = call.get("function") or {}
    name = str(fn.get("name") or "")
    try:
        args = _decode_arguments(name, fn.get("arguments"))
    except ToolArgumentDecodeError as e:
        log.warning("tool.bad_arguments", tool=name, arguments=str(fn.get("arguments"))[:200])
        content = e.as_result()
    else:
        content = await registry.execute(name, args)
    return {"role": "tool", "content": content, "tool_call_id": call.get("id")}


async def run_with_tools(
    config: ProviderConfig,
    request: ChatRequest,
    tools: Optional[List[Dict[str, Any]]] = None,
    *,
    registry: Optional[ToolRegistry] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> ToolRunResult:
    """Run the bounded tool loop, then open the streaming final answer.

    request.messages is extended in place with the synthesized messages.
    """
    registry = registry or default_registry()
    tools = registry.declarations() if tools is None else tools
    messages = request.messages
    tool_messages: List[Dict[str, Any]] = []

    rounds = 0
    while rounds < MAX_ROUNDS:
        rounds += 1
        response = await send_chat_with_tools(config, request, tools, client=client)
        choices = response.get("choices") or []
        if not choices:
            name = config.provider_name
            raise TransportError(
                f"No response from model: {name} at {config.base_url} returned no choices.",
                base_url=config.base_url,
                provider=name,
            )
        choice = choices[0]
        message = choice.get("message") or {}
        tool_calls = message.get("tool_calls") or []
        if choice.get("finish_reason") != "tool_calls" or not tool_calls:
            log.info("tools.decided", round=rounds, finish_reason=choice.get("finish_reason"))
            break

        log.info("tools.requested", round=rounds, calls=[(tc.get("function") or {}).get("name") for tc in tool_calls])
        assistant_msg = {"role": "assistant", "content": message.get("content") or "", "tool_calls": tool_calls}
        messages.append(assistant_msg)
        tool_messages.append(assistant_msg)

        # Results are attributed by call id in receipt order
        for call in tool_calls:
            tool_msg = await execute_tool_call(call, registry)
            messages.append(tool_msg)
            tool_messages.append(tool_msg)
    else:
        log.info("tools.round_budget_exhausted", rounds=rounds)

    final = ChatRequest(
        model=request.model,
        messages=messages,
        temperature=request.temperature,
        max_tokens=request.max_tokens,
    )
    stream = await send_chat_stream(config, final, client=client)
    return ToolRunResult(response=stream, tool_messages=tool_messages, messages=messages, rounds=rounds)
