"""Raw HTTP callers for the supported LLM providers.

``call_provider()`` routes a system + user prompt to Anthropic, OpenAI or
a local Ollama server and returns the text with token usage. No retry
logic lives here; the answer generator owns its retry strategy.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from skillbase.services.http_client_manager import get_http_client

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("anthropic", "openai", "ollama")


@dataclass
class ProviderReply:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


async def _call_anthropic(
    system: str, prompt: str, api_key: str, model: str, max_tokens: int, timeout: float,
) -> ProviderReply:
    client = get_http_client("anthropic", timeout)
    resp = await client.post(
        "https://api.anthropic.com/v1/messages",
        headers={
            "x-api-key": api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        },
        json={
            "model": model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.2,
        },
    )
    resp.raise_for_status()
    data = resp.json()
    text = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")
    usage = data.get("usage") or {}
    return ProviderReply(text, usage.get("input_tokens", 0), usage.get("output_tokens", 0))


async def _call_openai(
    system: str, prompt: str, api_key: str, model: str, max_tokens: int, timeout: float,
) -> ProviderReply:
    client = get_http_client("openai", timeout)
    resp = await client.post(
        "https://api.openai.com/v1/chat/completions",
        headers={"Authorization": f"Bearer {api_key}"},
        json={
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.2,
            "max_tokens": max_tokens,
        },
    )
    resp.raise_for_status()
    data = resp.json()
    usage = data.get("usage") or {}
    return ProviderReply(
        data["choices"][0]["message"]["content"],
        usage.get("prompt_tokens", 0),
        usage.get("completion_tokens", 0),
    )


async def _call_ollama(
    system: str, prompt: str, ollama_url: str, model: str, max_tokens: int, timeout: float,
) -> ProviderReply:
    client = get_http_client("ollama", timeout)
    resp = await client.post(
        f"{ollama_url.rstrip('/')}/api/generate",
        json={
            "model": model,
            "system": system,
            "prompt": prompt,
            "stream": False,
            "keep_alive": "30m",
            "options": {"temperature": 0.2, "num_predict": max_tokens},
        },
    )
    resp.raise_for_status()
    data = resp.json()
    return ProviderReply(
        data.get("response", ""),
        data.get("prompt_eval_count", 0),
        data.get("eval_count", 0),
    )


async def call_provider(
    system: str,
    prompt: str,
    provider: str,
    model: str,
    api_key: str = "",
    ollama_url: str = "http://host.docker.internal:11434",
    max_tokens: int = 4096,
    timeout: float = 120.0,
) -> ProviderReply:
    """Send one request to *provider* and return its reply.

    Raises
    ------
    ValueError : unknown provider or missing API key
    httpx.HTTPStatusError : 4xx / 5xx from the provider
    httpx.ConnectError, httpx.TimeoutException : transport failures
    """
    if provider == "ollama":
        return await _call_ollama(system, prompt, ollama_url, model, max_tokens, timeout)
    if provider not in SUPPORTED_PROVIDERS:
        raise ValueError(f"Unknown LLM provider: {provider}")
    if not api_key:
        raise ValueError(f"API key required for provider {provider}")
    if provider == "anthropic":
        return await _call_anthropic(system, prompt, api_key, model, max_tokens, timeout)
    return await _call_openai(system, prompt, api_key, model, max_tokens, timeout)
