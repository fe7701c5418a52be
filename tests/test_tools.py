import asyncio

import httpx
import orjson
import pytest

import tools
from errors import SearchBackendError, ToolError
from tools import (
    WEB_SEARCH_DECLARATION,
    SearchResult,
    Tool,
    ToolRegistry,
    default_registry,
    format_search_context,
    web_search,
)


def _decl(name, required=("x",)):
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": f"{name} tool",
            "parameters": {"type": "object", "properties": {"x": {"type": "string"}}, "required": list(required)},
        },
    }


def _exec(registry, name, args):
    return asyncio.run(registry.execute(name, args))


# ----------------- Registry -----------------

def test_default_registry_declares_web_search():
    reg = default_registry()
    assert "web_search" in reg
    assert reg.names() == ["web_search"]
    assert reg.declarations() == [WEB_SEARCH_DECLARATION]


def test_unknown_tool_is_reported_as_text():
    assert _exec(default_registry(), "nope", {}) == 'Error: Unknown tool "nope"'


def test_non_object_arguments_are_rejected():
    reg = ToolRegistry([Tool(_decl("echo"), lambda args: args["x"])])
    assert _exec(reg, "echo", ["a"]) == 'Error: Arguments for tool "echo" must be a JSON object'


def test_sync_and_async_executors():
    async def shout(args):
        return args["x"].upper()

    reg = ToolRegistry([
        Tool(_decl("echo"), lambda args: args["x"]),
        Tool(_decl("shout"), shout),
        Tool(_decl("info", required=()), lambda args: {"ok": True, "n": 2}),
        Tool(_decl("nothing", required=()), lambda args: None),
    ])
    assert _exec(reg, "echo", {"x": "hi"}) == "hi"
    assert _exec(reg, "shout", {"x": "hi"}) == "HI"
    assert orjson.loads(_exec(reg, "info", {})) == {"ok": True, "n": 2}
    assert _exec(reg, "nothing", {}) == ""


def test_executor_failures_become_error_text():
    def broken(args):
        raise RuntimeError("disk on fire")

    def refuses(args):
        raise ToolError("quota used up", tool="refuses")

    reg = ToolRegistry([Tool(_decl("broken"), broken), Tool(_decl("refuses"), refuses)])
    assert _exec(reg, "broken", {"x": "1"}) == "Error: RuntimeError: disk on fire"
    assert _exec(reg, "refuses", {"x": "1"}) == "Error: quota used up"


def test_missing_argument_inside_executor_does_not_raise():
    reg = ToolRegistry([Tool(_decl("echo"), lambda args: args["x"])])
    assert _exec(reg, "echo", {}) == "Error: KeyError: 'x'"


@pytest.mark.parametrize(
    "decl",
    [
        {"type": "other", "function": {}},
        {"type": "function"},
        {"type": "function", "function": {"name": "has space", "description": "d",
                                          "parameters": {"type": "object", "properties": {}}}},
        {"type": "function", "function": {"name": "t", "parameters": {"type": "object", "properties": {}}}},
        {"type": "function", "function": {"name": "t", "description": "d", "parameters": {"type": "string"}}},
        {"type": "function", "function": {"name": "t", "description": "d",
                                          "parameters": {"type": "object", "properties": {}, "required": ["q"]}}},
    ],
)
def test_invalid_declarations_are_rejected_at_registration(decl):
    with pytest.raises(ValueError):
        ToolRegistry([Tool(decl, lambda args: "")])


def test_duplicate_and_uncallable_registration():
    reg = ToolRegistry([Tool(_decl("echo"), lambda args: "")])
    with pytest.raises(ValueError):
        reg.register(Tool(_decl("echo"), lambda args: ""))
    with pytest.raises(ValueError):
        reg.register(Tool(_decl("other"), "not callable"))


# ----------------- web_search tool -----------------

def test_web_search_tool_requires_query():
    assert _exec(default_registry(), "web_search", {}) == "Error: Missing query parameter"
    assert _exec(default_registry(), "web_search", {"query": "   "}) == "Error: Missing query parameter"


def test_web_search_tool_reports_backend_failure(monkeypatch):
    async def failing(query, k=5, **kwargs):
        raise SearchBackendError("Brave Search rate limit reached.", tool="web_search")

    monkeypatch.setattr(tools, "web_search", failing)
    out = _exec(default_registry(), "web_search", {"query": "python"})
    assert out == "Search error: Brave Search rate limit reached."


def test_web_search_tool_formats_results(monkeypatch):
    async def found(query, k=5, **kwargs):
        return [SearchResult("Python", "https://python.org", "The language")]

    async def empty(query, k=5, **kwargs):
        return []

    monkeypatch.setattr(tools, "web_search", found)
    out = _exec(default_registry(), "web_search", {"query": "python"})
    assert out == "Web search results:\n\n1. [Python](https://python.org)\n   The language"

    monkeypatch.setattr(tools, "web_search", empty)
    assert _exec(default_registry(), "web_search", {"query": "zzz"}) == 'No web results found for "zzz".'


def test_format_search_context_numbers_entries():
    results = [SearchResult("A", "https://a.test", "first"), SearchResult("B", "https://b.test", "second")]
    assert format_search_context(results) == (
        "Web search results:\n\n"
        "1. [A](https://a.test)\n   first\n\n"
        "2. [B](https://b.test)\n   second"
    )
    assert format_search_context([]) == ""


# ----------------- Search backends -----------------

DDG_PAGE = """
<html><body>
  <div class="result">
    <a class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fexample.com%2Fpage&rut=abc">Example   Page</a>
    <a class="result__snippet">An   example snippet</a>
  </div>
  <div class="result">
    <a class="result__a" href="/relative/only">Skipped</a>
  </div>
  <div class="result">
    <a class="result__a" href="https://direct.test/">Direct</a>
  </div>
  <div class="result"><span>no link</span></div>
</body></html>
"""


def _search(handler, **kwargs):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await web_search("example", client=client, **kwargs)
    return asyncio.run(go())


def test_duckduckgo_results_are_parsed_and_unwrapped():
    def handler(request):
        assert request.url.host == "duckduckgo.com"
        assert request.url.params["q"] == "example"
        return httpx.Response(200, text=DDG_PAGE)

    results = _search(handler, api_key="")
    assert results == [
        SearchResult("Example Page", "https://example.com/page", "An example snippet"),
        SearchResult("Direct", "https://direct.test/", ""),
    ]


def test_duckduckgo_http_failure_raises_backend_error():
    with pytest.raises(SearchBackendError):
        _search(lambda r: httpx.Response(503), api_key="")


def test_brave_results_with_api_key():
    def handler(request):
        assert request.url.host == "api.search.brave.com"
        assert request.headers["X-Subscription-Token"] == "secret"
        assert request.url.params["count"] == "5"
        return httpx.Response(200, json={"web": {"results": [
            {"title": "Hit", "url": "https://hit.test", "description": "snippet"},
        ]}})

    assert _search(handler, api_key="secret") == [SearchResult("Hit", "https://hit.test", "snippet")]


@pytest.mark.parametrize("status,fragment", [(401, "API key"), (403, "API key"), (429, "rate limit"), (500, "500")])
def test_brave_errors(status, fragment):
    with pytest.raises(SearchBackendError) as info:
        _search(lambda r: httpx.Response(status), api_key="secret")
    assert fragment in str(info.value)
