"""Code-generation backend contract shared by every provider."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ..errors import BackendError
from ..telemetry import emit_event

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]


@dataclass(slots=True)
class UsageStats:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(cls, prompt: Any, completion: Any, total: Any = None) -> "UsageStats":
        prompt_tokens = int(prompt or 0)
        completion_tokens = int(completion or 0)
        total_tokens = int(total) if total is not None else prompt_tokens + completion_tokens
        return cls(prompt_tokens, completion_tokens, total_tokens)


@dataclass(slots=True)
class GenerationRequest:
    """Logical request sent to a code-generation backend."""

    prompt: str
    context: Dict[str, str] = field(default_factory=dict)
    max_tokens: int = 4000
    temperature: float = 0.1
    model: Optional[str] = None
    system_prompt: Optional[str] = None


@dataclass(slots=True)
class GenerationResponse:
    content: str
    usage: UsageStats = field(default_factory=UsageStats)
    model: str = ""


class CodeGenBackend:
    """Base backend: retries transport failures and normalises responses.

    Subclasses implement :meth:`_build_payload`, :meth:`_parse_response` and
    :meth:`_http_transport`; tests inject ``transport`` to avoid the network.
    """

    name = "backend"

    def __init__(
        self,
        *,
        model: str,
        transport: Optional[Transport] = None,
        timeout: float = 60.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        self._model = model
        self._transport = transport or self._http_transport
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        return self._model

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Send ``request`` and return the completion text with usage figures."""

        payload = self._build_payload(request)
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                raw = self._transport(payload)
                response = self._parse_response(raw)
            except (BackendError, OSError) as error:
                last_error = error
                LOGGER.warning("%s backend attempt %s/%s failed: %s", self.name, attempt, self._max_attempts, error)
                if attempt < self._max_attempts:
                    time.sleep(self._retry_delay)
                continue
            if not response.model:
                response.model = request.model or self._model
            emit_event(
                "backend_response",
                backend=self.name,
                model=response.model,
                attempt=attempt,
                usage={
                    "prompt_tokens": response.usage.prompt_tokens,
                    "completion_tokens": response.usage.completion_tokens,
                    "total_tokens": response.usage.total_tokens,
                },
            )
            return response
        raise BackendError(
            f"{self.name} backend failed after {self._max_attempts} attempt(s)",
            details={"model": request.model or self._model},
        ) from last_error

    @staticmethod
    def compose_prompt(request: GenerationRequest) -> str:
        if not request.context:
            return request.prompt
        lines = [request.prompt, "", "Context:"]
        lines.extend(f"- {key}: {value}" for key, value in sorted(request.context.items()))
        return "\n".join(lines)

    def _build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        raise NotImplementedError("Subclasses must implement _build_payload().")

    def _parse_response(self, raw: str) -> GenerationResponse:
        raise NotImplementedError("Subclasses must implement _parse_response().")

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        raise NotImplementedError("Subclasses must implement _http_transport().")


__all__ = [
    "CodeGenBackend",
    "GenerationRequest",
    "GenerationResponse",
    "Transport",
    "UsageStats",
]
