# tools.py
import inspect
import re
import urllib.parse
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx
import orjson
import structlog
from bs4 import BeautifulSoup

import config
from errors import SearchBackendError, ToolError, UnknownTool

log = structlog.get_logger(__name__)

Executor = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]

BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"
DDG_URL = "https://duckduckgo.com/html/"
SEARCH_TIMEOUT = 8.0


# ----------------- Helpers & Schema -----------------

def _clean_text(s: str) -> str:
    return re.sub(r"\s+", " ", s).strip()


def _validate_declaration(decl: Dict[str, Any]) -> str:
    """Check the OpenAI function-tool shape and return the tool name."""
    if decl.get("type") != "function":
        raise ValueError("tool declaration must have type 'function'")
    fn = decl.get("function")
    if not isinstance(fn, dict):
        raise ValueError("tool declaration is missing 'function'")
    name = fn.get("name")
    if not isinstance(name, str) or not re.fullmatch(r"[A-Za-z0-9_-]{1,64}", name):
        raise ValueError(f"invalid tool name: {name!r}")
    if not isinstance(fn.get("description"), str):
        raise ValueError(f"tool {name!r} needs a description")
    params = fn.get("parameters")
    if not isinstance(params, dict) or params.get("type") != "object":
        raise ValueError(f"tool {name!r} parameters must be an object schema")
    props = params.get("properties")
    if not isinstance(props, dict):
        raise ValueError(f"tool {name!r} parameters need 'properties'")
    missing = [r for r in params.get("required") or [] if r not in props]
    if missing:
        raise ValueError(f"tool {name!r} requires undeclared properties: {missing}")
    return name


def _as_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    if result is None:
        return ""
    return orjson.dumps(result, default=str).decode()


@dataclass(frozen=True)
class Tool:
    declaration: Dict[str, Any]
    executor: Executor

    @property
    def name(self) -> str:
        return self.declaration["function"]["name"]


class ToolRegistry:
    """Fixed mapping from declared tool name to its executor.

    execute() always returns text: the executor's result, or an "Error: ..."
    string for unknown tools, bad arguments and executor failures.
    """

    def __init__(self, tools: Optional[List[Tool]] = None):
        self._tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        name = _validate_declaration(tool.declaration)
        if name in self._tools:
            raise ValueError(f"tool {name!r} is already registered")
        if not callable(tool.executor):
            raise ValueError(f"tool {name!r} executor is not callable")
        self._tools[name] = tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def declarations(self) -> List[Dict[str, Any]]:
        return [t.declaration for t in self._tools.values()]

    async def execute(self, name: str, args: Any) -> str:
        tool = self._tools.get(name)
        if tool is None:
            log.warning("tool.unknown", tool=name)
            return UnknownTool(f'Unknown tool "{name}"', tool=name).as_result()
        if not isinstance(args, dict):
            return f'Error: Arguments for tool "{name}" must be a JSON object'
        log.info("tool.dispatch", tool=name, args=args)
        try:
            result = tool.executor(args)
            if inspect.isawaitable(result):
                result = await result
        except ToolError as e:
            log.warning("tool.failed", tool=name, error=str(e))
            return e.as_result()
        except Exception as e:
            log.warning("tool.crashed", tool=name, error=f"{type(e).__name__}: {e}")
            return f"Error: {type(e).__name__}: {e}"
        return _as_text(result)


# ----------------- Network: Search -----------------

@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    snippet: str


async def _get(url: str, *, params: Dict[str, Any], headers: Dict[str, str], client: Optional[httpx.AsyncClient]) -> httpx.Response:
    if client is not None:
        return await client.get(url, params=params, headers=headers, timeout=SEARCH_TIMEOUT)
    async with httpx.AsyncClient(timeout=SEARCH_TIMEOUT, follow_redirects=True) as c:
        return await c.get(url, params=params, headers=headers)


async def _brave_search(q: str, k: int, api_key: str, client: Optional[httpx.AsyncClient] = None) -> List[SearchResult]:
    """Brave Search API. Free tier allows 2,000 queries/month."""
    headers = {
        "Accept": "application/json",
        "Accept-Encoding": "gzip",
        "X-Subscription-Token": api_key,
    }
    try:
        r = await _get(BRAVE_URL, params={"q": q, "count": k}, headers=headers, client=client)
    except httpx.HTTPError as e:
        raise SearchBackendError(f"Brave Search request failed: {e}", tool="web_search") from e
    if r.status_code in (401, 403):
        raise SearchBackendError("Invalid Brave Search API key. Check BRAVE_SEARCH_API_KEY.", tool="web_search")
    if r.status_code == 429:
        raise SearchBackendError("Brave Search rate limit reached. Free tier allows 2,000 queries/month.", tool="web_search")
    if not r.is_success:
        raise SearchBackendError(f"Brave Search returned {r.status_code}", tool="web_search")
    data = r.json()
    items = ((data.get("web") or {}).get("results")) or []
    return [
        SearchResult(title=it.get("title", ""), url=it.get("url", ""), snippet=it.get("description", ""))
        for it in items[:k]
    ]


async def _ddg_search_html(q: str, k: int, client: Optional[httpx.AsyncClient] = None) -> List[SearchResult]:
    """Scrape DuckDuckGo's HTML results page."""
    headers = {"User-Agent": "Mozilla/5.0"}
    try:
        r = await _get(DDG_URL, params={"q": q}, headers=headers, client=client)
        r.raise_for_status()
    except httpx.HTTPError as e:
        raise SearchBackendError(f"web search failed: {e}", tool="web_search") from e
    soup = BeautifulSoup(r.text, "html.parser")

    items: List[SearchResult] = []
    for res in soup.select("div.result"):
        if len(items) >= k:
            break
        a = res.select_one("a.result__a")
        if not a:
            continue
        href = a.get("href", "")
        if "uddg=" in href:
            # Unwrap DDG redirect
            qs = urllib.parse.parse_qs(urllib.parse.urlsplit(href).query)
            href = urllib.parse.unquote(qs.get("uddg", [href])[0])
        if not (href.startswith("http://") or href.startswith("https://")):
            continue
        snippet_el = res.select_one(".result__snippet")
        items.append(SearchResult(
            title=_clean_text(a.get_text(" ", strip=True)),
            url=href,
            snippet=_clean_text(snippet_el.get_text(" ", strip=True)) if snippet_el else "",
        ))
    return items


async def web_search(query: str, k: int = 5, *, api_key: Optional[str] = None, client: Optional[httpx.AsyncClient] = None) -> List[SearchResult]:
    """
    Search the web. Uses Brave when an API key is configured, DuckDuckGo HTML otherwise.
    Raises SearchBackendError on failure.
    """
    key = config.BRAVE_SEARCH_API_KEY if api_key is None else api_key
    if key:
        return await _brave_search(query, k, key, client)
    return await _ddg_search_html(query, k, client)


def format_search_context(results: List[SearchResult]) -> str:
    """Render results as a numbered markdown list for the model."""
    if not results:
        return ""
    lines = [f"{i}. [{r.title}]({r.url})\n   {r.snippet}" for i, r in enumerate(results, 1)]
    return "Web search results:\n\n" + "\n\n".join(lines)


# ----------------- Built-in tools -----------------

WEB_SEARCH_DECLARATION: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "web_search",
        "description": (
            "Search the web for up-to-date information. Use this when the user asks about "
            "current events, prices, news, or anything that requires recent data."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query"},
            },
            "required": ["query"],
        },
    },
}


async def _run_web_search(args: Dict[str, Any]) -> str:
    query = str(args.get("query") or "").strip()
    if not query:
        return "Error: Missing query parameter"
    try:
        results = await web_search(query)
    except SearchBackendError as e:
        return f"Search error: {e}"
    return format_search_context(results) or f'No web results found for "{query}".'


BUILT_IN_TOOLS: List[Dict[str, Any]] = [WEB_SEARCH_DECLARATION]


def default_registry() -> ToolRegistry:
    return ToolRegistry([Tool(WEB_SEARCH_DECLARATION, _run_web_search)])
