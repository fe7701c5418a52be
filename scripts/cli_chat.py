#!/usr/bin/env python3
import asyncio
import json
import os
import sys
from typing import Any, Dict, Optional

import httpx


API_BASE = os.getenv("CHAT_API", "http://127.0.0.1:8000").rstrip("/")


def _render(evt: Dict[str, Any]) -> None:
    etype = evt.get("type")
    if etype == "delta":
        sys.stdout.write(evt.get("delta", ""))
        sys.stdout.flush()
    elif etype == "tool_calls":
        for tc in evt.get("tool_calls", []):
            fn = tc.get("function") or {}
            print(f"\n[tool] {fn.get('name')} {fn.get('arguments')}")
    elif etype == "tool_result":
        print(f"\n[tool_result] {evt.get('name')}\n{str(evt.get('output'))[:1200]}")
    elif etype == "error":
        print(f"\n[error] {evt.get('message')}", file=sys.stderr)
    elif etype == "done":
        print(f"\n\n[done] model={evt.get('model')}")


async def stream_events(path: str, payload: Dict[str, Any]) -> int:
    """POST to an SSE endpoint of the chat server and render each event; returns an exit code."""
    failed = False
    async with httpx.AsyncClient(timeout=None) as client:
        async with client.stream("POST", f"{API_BASE}{path}", json=payload) as resp:
            if resp.status_code != 200:
                print(f"HTTP {resp.status_code}: {(await resp.aread()).decode('utf-8', 'replace')}", file=sys.stderr)
                return 1
            async for line in resp.aiter_lines():
                if not line.startswith("data: "):
                    continue
                try:
                    evt = json.loads(line[len("data: "):])
                except json.JSONDecodeError:
                    continue
                if evt.get("type") == "error":
                    failed = True
                _render(evt)
    return 1 if failed else 0


def main() -> int:
    if len(sys.argv) < 2:
        print("Usage: scripts/cli_chat.py 'your prompt here' [options-json]")
        print("Example: scripts/cli_chat.py 'Latest Python release?' '{\"tools\": true, \"preset\": \"concise\"}'")
        print("Transform: scripts/cli_chat.py 'some text' '{\"command\": \"summarize\"}'")
        return 2
    prompt = sys.argv[1]
    options: Optional[Dict[str, Any]] = None
    if len(sys.argv) >= 3:
        try:
            options = json.loads(sys.argv[2])
        except json.JSONDecodeError as e:
            print(f"Invalid options JSON: {e}")
            return 2
    options = options or {}
    if options.get("command"):
        payload = {"text": prompt, **options}
        return asyncio.run(stream_events("/api/transform", payload))
    payload = {"messages": [{"role": "user", "content": prompt}], **options}
    return asyncio.run(stream_events("/api/chat/stream", payload))


if __name__ == "__main__":
    sys.exit(main())
