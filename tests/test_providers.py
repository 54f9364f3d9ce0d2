import asyncio
import json

import httpx
import pytest

from mentioned.exceptions import ProviderError
from mentioned.services.providers import (OpenAIProvider, ClaudeProvider, GeminiProvider,
                                          PerplexityProvider, ask, build_providers)

def client_for(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))

@pytest.mark.asyncio
async def test_openai_wire_format():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "1. Calendly"}}]})

    async with client_for(handler) as client:
        provider = OpenAIProvider("sk-test", "gpt-4o-mini", max_tokens=100, client=client)
        assert await provider.generate_response("best scheduler?") == "1. Calendly"

    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["messages"] == [{"role": "user", "content": "best scheduler?"}]
    assert seen["body"]["max_tokens"] == 100

@pytest.mark.asyncio
async def test_claude_joins_text_blocks():
    def handler(request: httpx.Request):
        assert request.headers["x-api-key"] == "ak"
        assert request.headers["anthropic-version"] == "2023-06-01"
        return httpx.Response(200, json={"content": [
            {"type": "text", "text": "Try "},
            {"type": "tool_use", "id": "x"},
            {"type": "text", "text": "SavvyCal."},
        ]})

    async with client_for(handler) as client:
        provider = ClaudeProvider("ak", "claude-3-5-haiku-latest", client=client)
        assert await provider.generate_response("hi") == "Try SavvyCal."

@pytest.mark.asyncio
async def test_gemini_url_and_parts():
    def handler(request: httpx.Request):
        assert request.url.path.endswith("/models/gemini-1.5-flash:generateContent")
        body = json.loads(request.content)
        assert body["contents"][0]["parts"][0]["text"] == "hi"
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "Doodle"}]}}]})

    async with client_for(handler) as client:
        provider = GeminiProvider("gk", "gemini-1.5-flash", client=client)
        assert await provider.generate_response("hi") == "Doodle"

@pytest.mark.asyncio
async def test_retries_rate_limits_then_succeeds():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(429, json={"error": "slow down"})
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    async with client_for(handler) as client:
        provider = PerplexityProvider("pk", "sonar", retries=2, backoff=0, client=client)
        assert await provider.generate_response("hi") == "ok"
    assert len(calls) == 3
    assert str(calls[0].url) == "https://api.perplexity.ai/chat/completions"

@pytest.mark.asyncio
async def test_gives_up_after_retries():
    async with client_for(lambda request: httpx.Response(503)) as client:
        provider = OpenAIProvider("sk", "m", retries=1, backoff=0, client=client)
        with pytest.raises(ProviderError) as exc:
            await provider.generate_response("hi")
    assert "gave up after 2 attempts" in str(exc.value)

@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, text="bad key")

    async with client_for(handler) as client:
        provider = OpenAIProvider("sk", "m", retries=3, backoff=0, client=client)
        with pytest.raises(ProviderError) as exc:
            await provider.generate_response("hi")
    assert exc.value.status_code == 401
    assert len(calls) == 1

@pytest.mark.asyncio
async def test_malformed_and_empty_payloads():
    async with client_for(lambda request: httpx.Response(200, json={"unexpected": True})) as client:
        with pytest.raises(ProviderError, match="malformed"):
            await OpenAIProvider("sk", "m", client=client).generate_response("hi")

    empty = {"choices": [{"message": {"content": "   "}}]}
    async with client_for(lambda request: httpx.Response(200, json=empty)) as client:
        with pytest.raises(ProviderError, match="empty"):
            await OpenAIProvider("sk", "m", client=client).generate_response("hi")

@pytest.mark.asyncio
async def test_claude_string_blocks_are_malformed():
    async with client_for(lambda request: httpx.Response(200, json={"content": ["just a string"]})) as client:
        with pytest.raises(ProviderError, match="malformed"):
            await ClaudeProvider("ak", "m", client=client).generate_response("hi")

@pytest.mark.asyncio
async def test_ask_never_raises():
    async with client_for(lambda request: httpx.Response(400, text="nope")) as client:
        reply = await ask(OpenAIProvider("sk", "m", client=client), "hi", timeout=1)
    assert not reply.ok
    assert reply.provider == "openai"
    assert "400" in reply.error

@pytest.mark.asyncio
async def test_ask_times_out():
    class Slow(OpenAIProvider):
        async def generate_response(self, prompt):
            await asyncio.sleep(5)
            return "late"

    async with client_for(lambda request: httpx.Response(200)) as client:
        reply = await ask(Slow("sk", "m", client=client), "hi", timeout=0.05)
    assert not reply.ok
    assert "timed out" in reply.error

@pytest.mark.asyncio
async def test_ask_turns_unexpected_errors_into_failed_replies():
    class Broken(OpenAIProvider):
        async def generate_response(self, prompt):
            raise RuntimeError("decoder exploded")

    async with client_for(lambda request: httpx.Response(200)) as client:
        reply = await ask(Broken("sk", "m", client=client), "hi", timeout=1)
    assert not reply.ok
    assert reply.error == "unexpected error: decoder exploded"

def test_build_providers_only_with_keys(settings):
    configured = settings.model_copy(update={"OPENAI_API_KEY": "sk", "GEMINI_API_KEY": "gk"})
    providers = build_providers(configured, client=httpx.AsyncClient())
    assert [p.name for p in providers] == ["openai", "gemini"]
    assert providers[0].model == settings.OPENAI_MODEL
    assert build_providers(settings) == []
