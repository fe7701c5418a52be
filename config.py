# config.py
import os
from dataclasses import dataclass, replace
from typing import Any, Dict

# Configure via env if you want
DEFAULT_URLS: Dict[str, str] = {
    "ollama": "http://localhost:11434",
    "lmstudio": "http://localhost:1234",
    "llamacpp": "http://localhost:8080",
    "custom": "",
}

PROVIDER_NAMES: Dict[str, str] = {
    "ollama": "Ollama",
    "lmstudio": "LM Studio",
    "llamacpp": "llama.cpp",
    "custom": "Custom server",
}

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, ""))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, ""))
    except ValueError:
        return default


LLM_PROVIDER = (os.getenv("LLM_PROVIDER") or "ollama").strip().lower()
LLM_BASE_URL = (os.getenv("LLM_BASE_URL") or "").strip()
MODEL = (os.getenv("MODEL") or "").strip()
TEMPERATURE = _env_float("TEMPERATURE", DEFAULT_TEMPERATURE)
MAX_TOKENS = _env_int("MAX_TOKENS", DEFAULT_MAX_TOKENS)
SYSTEM_PROMPT = (os.getenv("SYSTEM_PROMPT") or "").strip()
STREAM_RESPONSES = _env_bool("STREAM_RESPONSES", True)
TOOL_CALLING = _env_bool("TOOL_CALLING", True)
BRAVE_SEARCH_API_KEY = (os.getenv("BRAVE_SEARCH_API_KEY") or "").strip()
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
LOG_JSON = _env_bool("LOG_JSON", False)


@dataclass(frozen=True)
class ProviderConfig:
    type: str = "ollama"
    base_url: str = DEFAULT_URLS["ollama"]
    default_model: str = ""
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    system_prompt: str = ""
    stream_responses: bool = True

    @property
    def provider_name(self) -> str:
        return PROVIDER_NAMES.get(self.type, self.type or "server")


def get_default_base_url(provider: str) -> str:
    """LLM_BASE_URL wins over the provider's built-in default."""
    if LLM_BASE_URL:
        return LLM_BASE_URL.rstrip("/")
    return DEFAULT_URLS.get(provider, "")


def get_provider_config(**overrides: Any) -> ProviderConfig:
    provider = LLM_PROVIDER if LLM_PROVIDER in DEFAULT_URLS else "custom"
    cfg = ProviderConfig(
        type=provider,
        base_url=get_default_base_url(provider),
        default_model=MODEL,
        temperature=TEMPERATURE,
        max_tokens=MAX_TOKENS,
        system_prompt=SYSTEM_PROMPT,
        stream_responses=STREAM_RESPONSES,
    )
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if "base_url" in overrides:
        overrides["base_url"] = str(overrides["base_url"]).rstrip("/")
    return replace(cfg, **overrides) if overrides else cfg
