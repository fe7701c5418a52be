# server.py
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import httpx
import orjson
import structlog
from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from api import ChatRequest, check_health, fetch_models, send_chat, send_chat_stream, trim_messages
from config import TOOL_CALLING, ProviderConfig, get_provider_config
from errors import ChatError
from logsetup import setup_logging
from orchestrator import run_with_tools
from prompts import TRANSFORM_PROMPTS, build_transform_messages, system_prompt_for
from streaming import parse_sse_stream
from tools import default_registry

log = structlog.get_logger(__name__)

DATA = b"data: "
END = b"\n\n"


def _event(payload: Dict[str, Any]) -> bytes:
    return DATA + orjson.dumps(payload) + END


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logging()
    limits = httpx.Limits(max_connections=20, max_keepalive_connections=20)
    app.state.client = httpx.AsyncClient(limits=limits)
    app.state.config = get_provider_config()
    app.state.registry = default_registry()
    log.info("server.started", provider=app.state.config.type, base_url=app.state.config.base_url)
    yield
    # Shutdown
    await app.state.client.aclose()

app = FastAPI(title="Local LLM Chat", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _optional_float(v: Any) -> Optional[float]:
    try:
        return float(v) if v not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _optional_int(v: Any) -> Optional[int]:
    try:
        return int(v) if v not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _or_default(v: Any, default: Any) -> Any:
    return default if v is None else v


async def _resolve_model(config: ProviderConfig, requested: Optional[str]) -> str:
    """Requested model, else the configured default, else the first one the server lists."""
    model = (requested or config.default_model or "").strip()
    if model:
        return model
    models = await fetch_models(config, client=app.state.client)
    return models[0].id if models else ""


async def _single(response: Dict[str, Any]):
    """Non-streaming completion as a one-token stream."""
    choices = response.get("choices") or []
    content = ((choices[0].get("message") or {}).get("content") if choices else None) or ""
    if content:
        yield content


def _tool_events(tool_messages: List[Dict[str, Any]]) -> List[bytes]:
    out = []
    names: Dict[str, str] = {}
    for msg in tool_messages:
        if msg.get("role") == "assistant":
            for tc in msg.get("tool_calls") or []:
                names[tc.get("id")] = (tc.get("function") or {}).get("name")
            out.append(_event({"type": "tool_calls", "tool_calls": msg.get("tool_calls") or []}))
        elif msg.get("role") == "tool":
            call_id = msg.get("tool_call_id")
            out.append(_event({
                "type": "tool_result",
                "id": call_id,
                "name": names.get(call_id),
                "output": msg.get("content", ""),
            }))
    return out


@app.get("/api/health")
async def health():
    config: ProviderConfig = app.state.config
    ok = await check_health(config, client=app.state.client)
    return {"ok": ok, "provider": config.type, "base_url": config.base_url, "model": config.default_model}


@app.get("/api/models")
async def list_models():
    try:
        models = await fetch_models(app.state.config, client=app.state.client)
    except ChatError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"models": [asdict(m) for m in models]}


@app.post("/api/chat/stream")
async def chat_stream(payload: Dict[str, Any] = Body(...)):
    config: ProviderConfig = app.state.config
    messages = list(payload.get("messages") or [])
    system_prompt = system_prompt_for(payload.get("preset"), payload.get("system") or config.system_prompt)
    use_tools = bool(payload.get("tools", TOOL_CALLING))
    stream = bool(payload.get("stream", config.stream_responses))

    async def event_gen():
        full: List[str] = []
        tool_messages: List[Dict[str, Any]] = []
        try:
            model = await _resolve_model(config, payload.get("model"))
            if not model:
                yield _event({"type": "error", "message": "No model configured. Set MODEL or load a model on the server."})
                return
            convo: List[Dict[str, Any]] = []
            if system_prompt:
                convo.append({"role": "system", "content": system_prompt})
            convo.extend(messages)
            request = ChatRequest(
                model=model,
                messages=trim_messages(convo),
                temperature=_or_default(_optional_float(payload.get("temperature")), config.temperature),
                max_tokens=_or_default(_optional_int(payload.get("max_tokens")), config.max_tokens),
            )
            if use_tools:
                result = await run_with_tools(config, request, registry=app.state.registry, client=app.state.client)
                tool_messages = result.tool_messages
                for evt in _tool_events(tool_messages):
                    yield evt
                tokens = result.tokens()
            elif stream:
                tokens = parse_sse_stream(await send_chat_stream(config, request, client=app.state.client))
            else:
                tokens = _single(await send_chat(config, request, client=app.state.client))

            async for token in tokens:
                full.append(token)
                yield _event({"type": "delta", "delta": token})
        except ChatError as e:
            log.warning("chat.failed", error=str(e))
            yield _event({"type": "error", "message": str(e)})
            return
        except Exception as e:
            log.exception("chat.crashed")
            yield _event({"type": "error", "message": f"Unexpected error: {e.__class__.__name__}: {e}"})
            return

        yield _event({"type": "done", "model": model, "content": "".join(full), "tool_messages": tool_messages})
        # End the SSE stream
        yield b"event: close\ndata: {}\n\n"

    return StreamingResponse(event_gen(), media_type="text/event-stream")


@app.post("/api/transform")
async def transform(payload: Dict[str, Any] = Body(...)):
    command = str(payload.get("command") or "")
    if command not in TRANSFORM_PROMPTS:
        raise HTTPException(status_code=400, detail=f"unknown command; expected one of {sorted(TRANSFORM_PROMPTS)}")
    try:
        messages = build_transform_messages(command, str(payload.get("text") or ""), payload.get("language"))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    config: ProviderConfig = app.state.config

    async def event_gen():
        full: List[str] = []
        try:
            model = await _resolve_model(config, payload.get("model"))
            if not model:
                yield _event({"type": "error", "message": "No model configured. Set MODEL or load a model on the server."})
                return
            request = ChatRequest(model=model, messages=messages, temperature=config.temperature, max_tokens=config.max_tokens)
            async for token in parse_sse_stream(await send_chat_stream(config, request, client=app.state.client)):
                full.append(token)
                yield _event({"type": "delta", "delta": token})
        except ChatError as e:
            log.warning("transform.failed", command=command, error=str(e))
            yield _event({"type": "error", "message": str(e)})
            return
        except Exception as e:
            log.exception("transform.crashed", command=command)
            yield _event({"type": "error", "message": f"Unexpected error: {e.__class__.__name__}: {e}"})
            return
        yield _event({"type": "done", "model": model, "content": "".join(full)})
        yield b"event: close\ndata: {}\n\n"

    return StreamingResponse(event_gen(), media_type="text/event-stream")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",  # module_name:app_instance
        host="127.0.0.1",
        port=8000,
        reload=True,   # optional: auto-reload on file changes
    )
