# errors.py
"""Error hierarchy for the chat core.

Two domains:
  - TransportError: the exchange with the model server failed. Aborts the turn;
    str(err) already names the endpoint and provider, so callers can show it as-is.
  - ToolError: a tool call could not be honoured. Never leaves the registry;
    it is rendered into the tool message so the model can react to it.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for every error raised by the chat core."""


class TransportError(ChatError):
    def __init__(self, message: str, *, base_url: Optional[str] = None, provider: Optional[str] = None):
        self.base_url = base_url
        self.provider = provider
        super().__init__(message)


class TransportTimeout(TransportError):
    pass


class ConnectionRefused(TransportError):
    pass


class NetworkUnreachable(TransportError):
    pass


class HttpStatusError(TransportError):
    def __init__(self, message: str, *, status_code: int, **kwargs):
        self.status_code = status_code
        super().__init__(message, **kwargs)


class EmptyStreamBody(TransportError):
    pass


class MalformedStreamData(TransportError):
    pass


class ToolError(ChatError):
    def __init__(self, message: str, *, tool: Optional[str] = None):
        self.tool = tool
        super().__init__(message)

    def as_result(self) -> str:
        return f"Error: {self}"


class ToolArgumentDecodeError(ToolError):
    pass


class UnknownTool(ToolError):
    pass


class SearchBackendError(ToolError):
    pass
