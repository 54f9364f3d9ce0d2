import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple, Dict, Any, List

import httpx

from mentioned.config import Settings
from mentioned.exceptions import ProviderError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}

class AIProvider(ABC):
    """One completion backend; the pipeline only ever calls generate_response."""

    name = "provider"

    def __init__(self, api_key: str, model: str, max_tokens: int = 1500,
                 temperature: float = 0.3, timeout: float = 30.0, retries: int = 2,
                 backoff: float = 0.5, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.retries = retries
        self.backoff = backoff
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    @abstractmethod
    def build_request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        ...

    @abstractmethod
    def parse_response(self, data: Dict[str, Any]) -> str:
        ...

    async def generate_response(self, prompt: str) -> str:
        url, headers, body = self.build_request(prompt)
        last_error = "no attempt made"
        for attempt in range(self.retries + 1):
            if attempt and self.backoff:
                await asyncio.sleep(self.backoff * 2 ** (attempt - 1))
            try:
                r = await self.client.post(url, headers=headers, json=body)
            except httpx.RequestError as e:
                last_error = f"transport error: {e}"
                continue
            if r.status_code in RETRYABLE_STATUS:
                last_error = f"status {r.status_code}"
                continue
            if r.status_code >= 400:
                raise ProviderError(self.name, f"status {r.status_code}: {r.text[:200]}", r.status_code)
            try:
                text = self.parse_response(r.json())
            except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
                raise ProviderError(self.name, f"malformed payload: {e}") from e
            if not text or not text.strip():
                raise ProviderError(self.name, "empty completion")
            return text
        raise ProviderError(self.name, f"gave up after {self.retries + 1} attempts ({last_error})")

class OpenAIProvider(AIProvider):
    name = "openai"
    url = "https://api.openai.com/v1/chat/completions"

    def build_request(self, prompt):
        headers = {"Authorization": f"Bearer {self.api_key}"}
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        return self.url, headers, body

    def parse_response(self, data):
        return data["choices"][0]["message"]["content"]

class PerplexityProvider(OpenAIProvider):
    name = "perplexity"
    url = "https://api.perplexity.ai/chat/completions"

class ClaudeProvider(AIProvider):
    name = "claude"
    url = "https://api.anthropic.com/v1/messages"

    def build_request(self, prompt):
        headers = {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"}
        body = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        return self.url, headers, body

    def parse_response(self, data):
        return "".join(block.get("text", "") for block in data["content"] if block.get("type") == "text")

class GeminiProvider(AIProvider):
    name = "gemini"
    base = "https://generativelanguage.googleapis.com/v1beta/models"

    def build_request(self, prompt):
        url = f"{self.base}/{self.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key}
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"maxOutputTokens": self.max_tokens, "temperature": self.temperature},
        }
        return url, headers, body

    def parse_response(self, data):
        parts = data["candidates"][0]["content"]["parts"]
        return "".join(p.get("text", "") for p in parts)

@dataclass
class ProviderReply:
    provider: str
    text: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.text is not None

async def ask(provider: AIProvider, prompt: str, timeout: float) -> ProviderReply:
    """Runs one call under a wall-clock budget and never raises."""
    try:
        text = await asyncio.wait_for(provider.generate_response(prompt), timeout)
        return ProviderReply(provider=provider.name, text=text)
    except asyncio.TimeoutError:
        error = f"timed out after {timeout:.0f}s"
    except ProviderError as e:
        error = str(e)
    except httpx.HTTPError as e:
        error = f"http error: {e}"
    except Exception as e:
        logger.exception("provider %s raised unexpectedly", provider.name)
        return ProviderReply(provider=provider.name, error=f"unexpected error: {e}")
    logger.warning("provider %s failed: %s", provider.name, error)
    return ProviderReply(provider=provider.name, error=error)

PROVIDER_CLASSES = {
    "openai": (OpenAIProvider, "OPENAI_API_KEY", "OPENAI_MODEL"),
    "claude": (ClaudeProvider, "ANTHROPIC_API_KEY", "CLAUDE_MODEL"),
    "gemini": (GeminiProvider, "GEMINI_API_KEY", "GEMINI_MODEL"),
    "perplexity": (PerplexityProvider, "PERPLEXITY_API_KEY", "PERPLEXITY_MODEL"),
}

def build_providers(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> List[AIProvider]:
    """Every provider with an API key configured; plan filtering happens per scan."""
    out = []
    for name, (cls, key_attr, model_attr) in PROVIDER_CLASSES.items():
        key = getattr(settings, key_attr)
        if not key:
            continue
        out.append(cls(
            api_key=key,
            model=getattr(settings, model_attr),
            max_tokens=settings.PROVIDER_MAX_TOKENS,
            temperature=settings.PROVIDER_TEMPERATURE,
            timeout=settings.PROVIDER_TIMEOUT_SECS,
            retries=settings.PROVIDER_RETRIES,
            client=client,
        ))
    if not out:
        logger.warning("no provider API keys configured")
    return out
