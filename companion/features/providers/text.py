"""Text generation backends and the ordered fallback adapter.

Each backend returns a typed outcome instead of raising; the adapter walks
its backends in plan-specific priority order and only moves on after a
Retryable outcome.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Union

import groq
import httpx

from companion.core.config import settings
from companion.core.errors import ProviderError
from companion.core.logging import log_event

ChatMessages = List[Dict[str, str]]

PREMIUM_ORDER = ("novita", "groq")
FREE_ORDER = ("groq", "novita")


@dataclass
class Success:
    text: str
    total_tokens: Optional[int] = None


@dataclass
class Retryable:
    reason: str


@dataclass
class Fatal:
    reason: str


ProviderOutcome = Union[Success, Retryable, Fatal]


@dataclass
class Generation:
    """Text produced by one backend."""
    text: str
    backend: str
    total_tokens: Optional[int] = None


class TextBackend(Protocol):
    name: str

    def is_available(self) -> bool:
        ...

    def complete(self, messages: ChatMessages) -> ProviderOutcome:
        ...


def _extract_choice_text(payload: Dict) -> Optional[str]:
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(content, str) or not content.strip():
        return None
    return content.strip()


class NovitaChatBackend:
    """OpenAI-compatible chat completions on Novita (unrestricted register)."""

    name = "novita"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.NOVITA_API_KEY
        self.base_url = (base_url or settings.NOVITA_BASE_URL).rstrip("/")
        self.model = model or settings.NOVITA_CHAT_MODEL
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self._client = client

    def is_available(self) -> bool:
        return bool(self.api_key)

    def complete(self, messages: ChatMessages) -> ProviderOutcome:
        body = {
            "model": self.model,
            "messages": messages,
            "max_tokens": settings.CHAT_MAX_TOKENS,
            "temperature": settings.CHAT_TEMPERATURE,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}/openai/v1/chat/completions"
        try:
            if self._client is not None:
                response = self._client.post(url, json=body, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            return Retryable(f"transport error: {e.__class__.__name__}")

        if response.status_code in (400, 422):
            return Fatal(f"rejected request: HTTP {response.status_code} {response.text[:200]}")
        if response.status_code >= 300:
            return Retryable(f"HTTP {response.status_code} {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError:
            return Retryable("malformed JSON body")

        text = _extract_choice_text(payload)
        if text is None:
            return Retryable("no completion in response")
        usage = payload.get("usage") or {}
        return Success(text=text, total_tokens=usage.get("total_tokens"))


class GroqChatBackend:
    """Groq-hosted chat completions (cheaper, safety-constrained default)."""

    name = "groq"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[groq.Groq] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.GROQ_API_KEY
        self.model = model or settings.GROQ_CHAT_MODEL
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self._client = client

    def is_available(self) -> bool:
        return bool(self.api_key) or self._client is not None

    def _get_client(self) -> groq.Groq:
        if self._client is None:
            self._client = groq.Groq(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    def complete(self, messages: ChatMessages) -> ProviderOutcome:
        try:
            completion = self._get_client().chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=settings.CHAT_MAX_TOKENS,
                temperature=settings.CHAT_TEMPERATURE,
            )
        except groq.BadRequestError as e:
            return Fatal(f"rejected request: {e.message}")
        except groq.APIError as e:
            return Retryable(f"{e.__class__.__name__}: {getattr(e, 'message', '')}")

        try:
            content = completion.choices[0].message.content
        except (AttributeError, IndexError):
            return Retryable("no completion in response")
        if not content or not content.strip():
            return Retryable("empty completion")
        usage = getattr(completion, "usage", None)
        return Success(text=content.strip(), total_tokens=getattr(usage, "total_tokens", None))


class GenerationAdapter:
    """
    Ordered provider strategies.

    Premium prefers the unrestricted backend, free the cheaper constrained
    one; both fall back to whichever backend is actually configured.
    """

    def __init__(self, backends: Sequence[TextBackend]):
        self.backends = {backend.name: backend for backend in backends}

    def order_for(self, premium: bool) -> List[TextBackend]:
        preferred = PREMIUM_ORDER if premium else FREE_ORDER
        ordered = [self.backends[name] for name in preferred if name in self.backends]
        ordered += [b for name, b in self.backends.items() if name not in preferred]
        return [b for b in ordered if b.is_available()]

    def generate(self, messages: ChatMessages, *, premium: bool = False, user_id: Optional[str] = None) -> Generation:
        """
        Run the envelope through the backends in priority order.

        Raises:
            ProviderError: no backend configured, a Fatal outcome, or every
                backend returned Retryable
        """
        candidates = self.order_for(premium)
        if not candidates:
            raise ProviderError("No text generation backend is configured")

        for backend in candidates:
            outcome = backend.complete(messages)
            if isinstance(outcome, Success):
                return Generation(text=outcome.text, backend=backend.name, total_tokens=outcome.total_tokens)

            log_event(
                "warning",
                "provider.backend_failed",
                user_id=user_id,
                event_type="provider.generate",
                error_code="fatal" if isinstance(outcome, Fatal) else "retryable",
                extra={"backend": backend.name, "reason": outcome.reason},
            )
            if isinstance(outcome, Fatal):
                raise ProviderError(f"{backend.name} rejected the request")

        raise ProviderError("All text generation backends failed")


def build_default_adapter() -> GenerationAdapter:
    return GenerationAdapter([NovitaChatBackend(), GroqChatBackend()])
