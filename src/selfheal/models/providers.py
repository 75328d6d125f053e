"""Provider-specific backends and construction from configuration."""

from __future__ import annotations

import json
import os
from typing import Any, Dict, Mapping, Optional

from ..config import LLMSettings
from ..errors import BackendError, ConfigurationError
from .backend import CodeGenBackend, GenerationRequest, GenerationResponse, Transport, UsageStats

DEFAULT_SYSTEM_PROMPT = (
    "You are an expert software engineer who fixes code defects with minimal, "
    "safe unified diffs."
)


def _post_json(url: str, payload: Mapping[str, Any], headers: Mapping[str, str], timeout: float) -> str:
    """POST ``payload`` as JSON and return the decoded body."""
    import urllib.error
    import urllib.request

    data = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read()
            status = getattr(response, "status", 200)
    except TimeoutError as error:  # pragma: no cover - network-dependent
        raise BackendError(f"Request to {url} timed out.") from error
    except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
        message = error.read().decode("utf-8", errors="ignore")
        raise BackendError(f"HTTP {error.code}: {message}", details={"status": error.code}) from error
    except urllib.error.URLError as error:  # pragma: no cover - network-dependent
        raise BackendError(f"Failed to reach {url}: {error.reason}") from error
    if status >= 400:
        raise BackendError(f"Unexpected HTTP status {status}", details={"status": status})
    return raw.decode("utf-8")


def _load_json(raw: str, backend: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as error:
        raise BackendError(f"{backend} returned invalid JSON: {raw[:200]}") from error
    if not isinstance(data, dict):
        raise BackendError(f"{backend} returned an unexpected payload type.")
    return data


class OpenAIBackend(CodeGenBackend):
    """Chat Completions API backend."""

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-4",
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        transport: Optional[Transport] = None,
        timeout: float = 60.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(
            model=model,
            transport=transport,
            timeout=timeout,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
        )
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url.rstrip("/")
        if transport is None and not self._api_key:
            raise ConfigurationError("An API key is required when using the default OpenAI transport.")

    def _build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        return {
            "model": request.model or self.model,
            "messages": [
                {"role": "system", "content": request.system_prompt or DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": self.compose_prompt(request)},
            ],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }

    def _parse_response(self, raw: str) -> GenerationResponse:
        data = _load_json(raw, self.name)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as error:
            raise BackendError("OpenAI response did not contain a message.") from error
        usage = data.get("usage") or {}
        return GenerationResponse(
            content=content or "",
            usage=UsageStats.from_counts(
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
                usage.get("total_tokens"),
            ),
            model=data.get("model") or "",
        )

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        return _post_json(
            f"{self._base_url}/chat/completions",
            payload,
            {"Authorization": f"Bearer {self._api_key}"},
            self._timeout,
        )


class AnthropicBackend(CodeGenBackend):
    """Messages API backend."""

    name = "anthropic"
    api_version = "2023-06-01"

    def __init__(
        self,
        *,
        model: str = "claude-3-5-sonnet-latest",
        api_key: Optional[str] = None,
        base_url: str = "https://api.anthropic.com/v1",
        transport: Optional[Transport] = None,
        timeout: float = 60.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(
            model=model,
            transport=transport,
            timeout=timeout,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
        )
        self._api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self._base_url = base_url.rstrip("/")
        if transport is None and not self._api_key:
            raise ConfigurationError("An API key is required when using the default Anthropic transport.")

    def _build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        return {
            "model": request.model or self.model,
            "system": request.system_prompt or DEFAULT_SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": self.compose_prompt(request)}],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }

    def _parse_response(self, raw: str) -> GenerationResponse:
        data = _load_json(raw, self.name)
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise BackendError("Anthropic response did not contain content blocks.")
        text = "".join(block.get("text", "") for block in blocks if isinstance(block, dict) and block.get("type") == "text")
        usage = data.get("usage") or {}
        return GenerationResponse(
            content=text,
            usage=UsageStats.from_counts(usage.get("input_tokens"), usage.get("output_tokens")),
            model=data.get("model") or "",
        )

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        return _post_json(
            f"{self._base_url}/messages",
            payload,
            {"x-api-key": self._api_key or "", "anthropic-version": self.api_version},
            self._timeout,
        )


class LocalBackend(CodeGenBackend):
    """Ollama-compatible local model server."""

    name = "local"

    def __init__(
        self,
        *,
        model: str = "codellama",
        base_url: str = "http://localhost:11434",
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(
            model=model,
            transport=transport,
            timeout=timeout,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
        )
        self._base_url = base_url.rstrip("/")

    def _build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        return {
            "model": request.model or self.model,
            "system": request.system_prompt or DEFAULT_SYSTEM_PROMPT,
            "prompt": self.compose_prompt(request),
            "stream": False,
            "options": {"temperature": request.temperature, "num_predict": request.max_tokens},
        }

    def _parse_response(self, raw: str) -> GenerationResponse:
        data = _load_json(raw, self.name)
        content = data.get("response")
        if not isinstance(content, str):
            raise BackendError("Local model response did not contain text.")
        return GenerationResponse(
            content=content,
            usage=UsageStats.from_counts(data.get("prompt_eval_count"), data.get("eval_count")),
            model=data.get("model") or "",
        )

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        return _post_json(f"{self._base_url}/api/generate", payload, {}, self._timeout)


BACKENDS = {
    "openai": OpenAIBackend,
    "anthropic": AnthropicBackend,
    "local": LocalBackend,
}


def build_backend(settings: LLMSettings, *, transport: Optional[Transport] = None) -> CodeGenBackend:
    """Construct the configured backend once; callers never re-branch per request."""

    kwargs: Dict[str, Any] = {
        "model": settings.model,
        "transport": transport,
        "timeout": settings.timeout,
    }
    if settings.base_url:
        kwargs["base_url"] = settings.base_url
    if settings.backend != "local" and settings.api_key_env:
        kwargs["api_key"] = os.getenv(settings.api_key_env)
    backend_cls = BACKENDS.get(settings.backend)
    if backend_cls is None:
        raise ConfigurationError(f"Unknown backend: {settings.backend}")
    return backend_cls(**kwargs)


__all__ = ["AnthropicBackend", "BACKENDS", "LocalBackend", "OpenAIBackend", "build_backend"]
