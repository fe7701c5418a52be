# api.py
"""
Transport client for OpenAI-compatible local model servers.

Three exchange modes against {base_url}/v1/chat/completions:
  - send_chat             plain completion, 300s limit (local hardware can be slow)
  - send_chat_with_tools  tool-decision round, 60s limit
  - send_chat_stream      streaming completion, no client-side limit; the
                          caller supervises liveness and the decoder closes it

Failures are translated into TransportError subclasses whose message names the
configured endpoint and provider. Anything not recognised passes through.
"""

import base64
import mimetypes
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog

from config import ProviderConfig
from errors import (
    ConnectionRefused,
    EmptyStreamBody,
    HttpStatusError,
    NetworkUnreachable,
    TransportError,
    TransportTimeout,
)

log = structlog.get_logger(__name__)

CHAT_PATH = "/v1/chat/completions"
MODELS_TIMEOUT = 10.0
TOOLS_TIMEOUT = 60.0
CHAT_TIMEOUT = 300.0
IMAGE_FAILED_TEXT = "[Image failed to load]"

# Vision-capable model families in Ollama
VISION_FAMILIES = {"clip", "mllama"}


@dataclass
class ChatRequest:
    model: str
    messages: List[Dict[str, Any]]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    def body(self, *, stream: bool, tools: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "model": self.model,
            "messages": prepare_messages_for_api(self.messages),
            "stream": stream,
        }
        if self.temperature is not None:
            out["temperature"] = self.temperature
        if self.max_tokens is not None:
            out["max_tokens"] = self.max_tokens
        if tools:
            out["tools"] = tools
        return out


@dataclass
class Model:
    id: str
    name: str
    owned_by: Optional[str] = None
    parameter_size: Optional[str] = None
    quantization_level: Optional[str] = None
    family: Optional[str] = None
    families: List[str] = field(default_factory=list)
    format: Optional[str] = None
    disk_size: Optional[int] = None
    max_context_length: Optional[int] = None
    supports_vision: bool = False


# ----------------- Shared client -----------------

_CLIENT: Optional[httpx.AsyncClient] = None


def get_client() -> httpx.AsyncClient:
    """Process-wide client used when a caller does not bring its own."""
    global _CLIENT
    if _CLIENT is None or _CLIENT.is_closed:
        limits = httpx.Limits(max_connections=20, max_keepalive_connections=20)
        _CLIENT = httpx.AsyncClient(limits=limits)
    return _CLIENT


# ----------------- Error translation -----------------

def _is_refused(err: BaseException) -> bool:
    # Dual-stack hosts (localhost) fail with one group holding an error per address
    seen = set()
    pending: List[BaseException] = [err]
    while pending:
        cur = pending.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        if isinstance(cur, ConnectionRefusedError):
            return True
        text = str(cur)
        if "ECONNREFUSED" in text or "Connection refused" in text or "[Errno 111]" in text:
            return True
        pending.extend(getattr(cur, "exceptions", None) or [])
        nxt = cur.__cause__ or cur.__context__
        if nxt is not None:
            pending.append(nxt)
    return False


def translate_error(err: httpx.HTTPError, config: ProviderConfig) -> Optional[TransportError]:
    """Map an httpx failure to a user-presentable TransportError.

    Returns None for errors that are neither timeouts nor connection problems;
    those are re-raised unchanged.
    """
    name = config.provider_name
    ctx = {"base_url": config.base_url, "provider": name}
    if isinstance(err, httpx.TimeoutException):
        out: TransportError = TransportTimeout(
            f"Server took too long to respond. Check that {name} is running at {config.base_url}.", **ctx
        )
    elif isinstance(err, httpx.ConnectError) and _is_refused(err):
        out = ConnectionRefused(
            f"Server not running at {config.base_url}. Start your {name} server and try again.", **ctx
        )
    elif isinstance(err, httpx.NetworkError):
        out = NetworkUnreachable(f"Cannot connect to {name} at {config.base_url}. Is it running?", **ctx)
    else:
        return None
    log.warning("transport.failed", kind=type(out).__name__, provider=name, base_url=config.base_url, cause=str(err))
    return out


def _status_error(resp: httpx.Response, config: ProviderConfig) -> HttpStatusError:
    name = config.provider_name
    log.warning("transport.http_status", status=resp.status_code, provider=name, base_url=config.base_url)
    return HttpStatusError(
        f"{name} at {config.base_url} returned {resp.status_code} {resp.reason_phrase}".rstrip(),
        status_code=resp.status_code,
        base_url=config.base_url,
        provider=name,
    )


# ----------------- Multimodal encoding -----------------

def _image_part(path: str) -> Dict[str, Any]:
    try:
        raw = pathlib.Path(path).read_bytes()
    except OSError as e:
        log.warning("api.image_read_failed", path=path, error=str(e))
        return {"type": "text", "text": IMAGE_FAILED_TEXT}
    mime = mimetypes.guess_type(path)[0] or "image/png"
    if not mime.startswith("image/"):
        mime = "image/png"
    b64 = base64.b64encode(raw).decode("ascii")
    return {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{b64}"}}


def prepare_messages_for_api(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert messages carrying `images` into OpenAI content parts.

    Only applies when at least one message has images; messages without images
    pass through unchanged. An unreadable image becomes a placeholder text part.
    """
    if not any(m.get("images") for m in messages):
        return messages
    out: List[Dict[str, Any]] = []
    for msg in messages:
        images = msg.get("images")
        if not images:
            out.append(msg)
            continue
        parts: List[Dict[str, Any]] = []
        if msg.get("content"):
            parts.append({"type": "text", "text": msg["content"]})
        for path in images:
            parts.append(_image_part(path))
        out.append({"role": msg["role"], "content": parts or msg.get("content", "")})
    return out


# ----------------- Chat completions -----------------

async def _post_json(config: ProviderConfig, body: Dict[str, Any], timeout: float, client: Optional[httpx.AsyncClient]) -> Dict[str, Any]:
    client = client or get_client()
    url = f"{config.base_url}{CHAT_PATH}"
    try:
        r = await client.post(url, json=body, timeout=timeout)
    except httpx.HTTPError as e:
        err = translate_error(e, config)
        if err is None:
            raise
        raise err from e
    if not r.is_success:
        raise _status_error(r, config)
    return r.json()


async def send_chat(config: ProviderConfig, request: ChatRequest, *, client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    return await _post_json(config, request.body(stream=False), CHAT_TIMEOUT, client)


async def send_chat_with_tools(
    config: ProviderConfig,
    request: ChatRequest,
    tools: List[Dict[str, Any]],
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """Non-streaming request that lets the model answer with tool calls."""
    return await _post_json(config, request.body(stream=False, tools=tools), TOOLS_TIMEOUT, client)


async def send_chat_stream(config: ProviderConfig, request: ChatRequest, *, client: Optional[httpx.AsyncClient] = None) -> httpx.Response:
    """Open a streaming completion and return the response unread.

    The caller owns the response; streaming.parse_sse_stream closes it.
    """
    client = client or get_client()
    url = f"{config.base_url}{CHAT_PATH}"
    req = client.build_request("POST", url, json=request.body(stream=True), timeout=None)
    try:
        resp = await client.send(req, stream=True)
    except httpx.HTTPError as e:
        err = translate_error(e, config)
        if err is None:
            raise
        raise err from e
    if not resp.is_success:
        await resp.aclose()
        raise _status_error(resp, config)
    if resp.status_code == 204 or resp.headers.get("content-length") == "0":
        await resp.aclose()
        name = config.provider_name
        raise EmptyStreamBody(
            f"Response body from {name} at {config.base_url} is empty. Streaming is not supported by the server.",
            base_url=config.base_url,
            provider=name,
        )
    return resp


# ----------------- Models & health -----------------

async def _get_json(config: ProviderConfig, client: httpx.AsyncClient, path: str, *, missing_ok: bool = False) -> Optional[Dict[str, Any]]:
    """GET a model-listing endpoint. With missing_ok, a 404 returns None."""
    try:
        r = await client.get(f"{config.base_url}{path}", timeout=MODELS_TIMEOUT)
    except httpx.HTTPError as e:
        err = translate_error(e, config)
        if err is None:
            raise
        raise err from e
    if missing_ok and r.status_code == 404:
        return None
    if not r.is_success:
        raise _status_error(r, config)
    return r.json()


async def _generic_models(config: ProviderConfig, client: httpx.AsyncClient) -> List[Model]:
    data = await _get_json(config, client, "/v1/models") or {}
    out = []
    for m in data.get("data") or []:
        mid = str(m.get("id") or "")
        if mid:
            out.append(Model(id=mid, name=str(m.get("name") or mid), owned_by=m.get("owned_by")))
    return out


async def _ollama_models(config: ProviderConfig, client: httpx.AsyncClient) -> List[Model]:
    data = await _get_json(config, client, "/api/tags", missing_ok=True)
    if data is None:
        return await _generic_models(config, client)
    out = []
    for m in data.get("models") or []:
        details = m.get("details") or {}
        families = details.get("families") or []
        out.append(Model(
            id=m.get("name", ""),
            name=m.get("name", ""),
            parameter_size=details.get("parameter_size"),
            quantization_level=details.get("quantization_level"),
            family=details.get("family"),
            families=list(families),
            format=details.get("format"),
            disk_size=m.get("size"),
            supports_vision=any(f in VISION_FAMILIES for f in families),
        ))
    return out


async def _lmstudio_models(config: ProviderConfig, client: httpx.AsyncClient) -> List[Model]:
    data = await _get_json(config, client, "/api/v0/models", missing_ok=True)
    if data is None:
        return await _generic_models(config, client)
    out = []
    for m in data.get("data") or []:
        out.append(Model(
            id=m.get("id", ""),
            name=m.get("id", ""),
            family=m.get("arch"),
            quantization_level=m.get("quantization"),
            format=m.get("compatibility_type"),
            max_context_length=m.get("max_context_length"),
            supports_vision=m.get("type") == "vlm",
        ))
    return out


async def fetch_models(config: ProviderConfig, *, client: Optional[httpx.AsyncClient] = None) -> List[Model]:
    client = client or get_client()
    if config.type == "ollama":
        return await _ollama_models(config, client)
    if config.type == "lmstudio":
        return await _lmstudio_models(config, client)
    return await _generic_models(config, client)


async def check_health(config: ProviderConfig, *, client: Optional[httpx.AsyncClient] = None) -> bool:
    client = client or get_client()
    try:
        r = await client.get(f"{config.base_url}/v1/models", timeout=MODELS_TIMEOUT)
    except httpx.HTTPError:
        return False
    return r.status_code == 200


def _drop_broken_tool_exchanges(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Remove tool replies without their assistant call, and calls missing replies.

    A tool message is valid only inside the run that directly follows the
    assistant message whose tool_calls carry its id.
    """
    out: List[Dict[str, Any]] = []
    i = 0
    while i < len(messages):
        msg = messages[i]
        if msg.get("role") == "tool":
            i += 1
            continue
        if msg.get("role") == "assistant" and msg.get("tool_calls"):
            ids = {tc.get("id") for tc in msg["tool_calls"]}
            j = i + 1
            replies = []
            while j < len(messages) and messages[j].get("role") == "tool":
                if messages[j].get("tool_call_id") in ids:
                    replies.append(messages[j])
                j += 1
            if {r.get("tool_call_id") for r in replies} == ids:
                out.append(msg)
                out.extend(replies)
            i = j
            continue
        out.append(msg)
        i += 1
    return out


def trim_messages(messages: List[Dict[str, Any]], max_messages: int = 50) -> List[Dict[str, Any]]:
    """Keep every system message plus the last `max_messages` others.

    The cut never leaves half a tool exchange behind.
    """
    if len(messages) <= max_messages:
        return messages
    system = [m for m in messages if m.get("role") == "system"]
    rest = [m for m in messages if m.get("role") != "system"]
    return system + _drop_broken_tool_exchanges(rest[-max_messages:])
