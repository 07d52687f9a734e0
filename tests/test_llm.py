import json
import sys
from pathlib import Path
from types import SimpleNamespace

import anthropic
import httpx
import openai
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from charforge.services import llm


def sdk_rate_limit(sdk):
    request = httpx.Request("POST", "https://api.example.com/v1/messages")
    response = httpx.Response(429, request=request)
    return sdk.RateLimitError("slow down", response=response, body=None)


class FakeOpenAIClient:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        message = SimpleNamespace(content=response)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeAnthropicClient:
    def __init__(self, blocks, error=None):
        self.blocks = blocks
        self.error = error
        self.calls = []
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(content=self.blocks)


def test_create_provider_rejects_unknown_name():
    with pytest.raises(llm.ConfigurationError):
        llm.create_provider({"LLM_PROVIDER": "carrier-pigeon"})


def test_create_provider_requires_api_key():
    with pytest.raises(llm.ConfigurationError) as excinfo:
        llm.create_provider({"LLM_PROVIDER": "openai", "OPENAI_MODEL": "gpt-4o-mini"})
    assert "api_key" in str(excinfo.value)


def test_mock_provider_answers_by_request_type():
    provider = llm.create_provider({"LLM_PROVIDER": "mock"})

    background = json.loads(provider.chat([{"role": "user", "content": "Generate a background"}]))
    equipment = json.loads(provider.chat([{"role": "user", "content": "Suggest equipment"}]))
    unknown = json.loads(provider.chat([{"role": "user", "content": "Hello"}]))

    assert background == llm.MOCK_BACKGROUND
    assert equipment == llm.MOCK_EQUIPMENT
    assert unknown == {"error": "Unknown request type"}
    assert provider.test_connection()


def test_providers_validate_messages():
    provider = llm.MockProvider()
    with pytest.raises(llm.ProviderError):
        provider.chat([])
    with pytest.raises(llm.ProviderError):
        provider.chat([{"role": "system", "content": "hi"}])
    with pytest.raises(llm.ProviderError):
        provider.chat([{"role": "user", "content": ""}])


def test_openai_provider_sends_system_prompt_and_json_format():
    client = FakeOpenAIClient(['  {"background": "x"}  '])
    provider = llm.OpenAIProvider(
        {"api_key": "sk-test", "model": "gpt-4o-mini", "max_tokens": 200, "temperature": 0.2},
        client=client,
    )

    text = provider.chat([{"role": "user", "content": "Go"}], system_prompt="Be brief")

    assert text == '{"background": "x"}'
    call = client.calls[0]
    assert call["messages"][0] == {"role": "system", "content": "Be brief"}
    assert call["response_format"] == {"type": "json_object"}
    assert call["max_tokens"] == 200
    assert call["temperature"] == 0.2


def test_openai_provider_maps_errors():
    client = FakeOpenAIClient([sdk_rate_limit(openai), RuntimeError("boom"), ""])
    provider = llm.OpenAIProvider({"api_key": "sk-test", "model": "m"}, client=client)
    messages = [{"role": "user", "content": "Go"}]

    with pytest.raises(llm.RateLimitError):
        provider.chat(messages)
    with pytest.raises(llm.ProviderError) as excinfo:
        provider.chat(messages)
    assert "boom" in str(excinfo.value)
    with pytest.raises(llm.ProviderError):
        provider.chat(messages)


def test_anthropic_provider_joins_text_blocks():
    client = FakeAnthropicClient(
        [
            SimpleNamespace(type="text", text='{"background": '),
            SimpleNamespace(type="tool_use", text="ignored"),
            SimpleNamespace(type="text", text='"y"}'),
        ]
    )
    provider = llm.AnthropicProvider({"api_key": "key", "model": "claude"}, client=client)

    text = provider.chat([{"role": "user", "content": "Go"}], system_prompt="System")

    assert text == '{"background": "y"}'
    assert client.calls[0]["system"] == "System"
    assert client.calls[0]["messages"] == [{"role": "user", "content": "Go"}]


def test_anthropic_provider_rejects_empty_content():
    provider = llm.AnthropicProvider(
        {"api_key": "key", "model": "claude"}, client=FakeAnthropicClient([])
    )
    with pytest.raises(llm.ProviderError):
        provider.chat([{"role": "user", "content": "Go"}])


def test_anthropic_provider_maps_rate_limit():
    client = FakeAnthropicClient([], error=sdk_rate_limit(anthropic))
    provider = llm.AnthropicProvider({"api_key": "key", "model": "claude"}, client=client)

    with pytest.raises(llm.RateLimitError):
        provider.chat([{"role": "user", "content": "Go"}])


class ScriptedProvider(llm.LLMProvider):
    name = "scripted"

    def __init__(self, outcomes):
        super().__init__()
        self.outcomes = list(outcomes)
        self.calls = 0

    def chat(self, messages, *, system_prompt=None):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_service_retries_rate_limits_with_linear_backoff(monkeypatch):
    delays = []
    monkeypatch.setattr(llm.time, "sleep", delays.append)
    provider = ScriptedProvider([llm.RateLimitError("1"), llm.RateLimitError("2"), "ok"])
    service = llm.LLMService(provider, max_retries=3, retry_delay=0.5)

    assert service.chat([{"role": "user", "content": "Go"}]) == "ok"
    assert provider.calls == 3
    assert delays == [0.5, 1.0]


def test_service_gives_up_after_max_retries(monkeypatch):
    monkeypatch.setattr(llm.time, "sleep", lambda _: None)
    provider = ScriptedProvider([llm.RateLimitError("limit")] * 3)
    service = llm.LLMService(provider, max_retries=2, retry_delay=0)

    with pytest.raises(llm.ProviderError) as excinfo:
        service.chat([{"role": "user", "content": "Go"}])
    assert str(excinfo.value).startswith("Failed to process chat request")
    assert provider.calls == 3


def test_service_wraps_unexpected_errors():
    service = llm.LLMService(ScriptedProvider([KeyError("choices")]), max_retries=3)

    with pytest.raises(llm.ProviderError) as excinfo:
        service.chat([{"role": "user", "content": "Go"}])
    assert isinstance(excinfo.value.__cause__, KeyError)


def test_service_from_config_reads_retry_settings():
    service = llm.LLMService.from_config(
        {"LLM_PROVIDER": "mock", "LLM_MAX_RETRIES": 5, "LLM_RETRY_DELAY": 0.25}
    )
    assert isinstance(service.provider, llm.MockProvider)
    assert service.max_retries == 5
    assert service.retry_delay == 0.25
