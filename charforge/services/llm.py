"""Thin provider abstraction over the chat LLMs used for character generation.

Providers accept a list of ``{"role": ..., "content": ...}`` messages plus an
optional system prompt and return the model's text. :class:`LLMService` adds
logging, retries on rate limits and a single error type for callers.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

import anthropic
import openai

LOGGER = logging.getLogger(__name__)

Message = Mapping[str, str]


class LLMError(RuntimeError):
    """Base class for LLM failures."""


class ConfigurationError(LLMError):
    """Raised when a provider is unknown or missing required settings."""


class ProviderError(LLMError):
    """Raised when a provider call fails."""


class RateLimitError(ProviderError):
    """Raised when the provider asks us to slow down."""


class LLMProvider:
    name = "base"
    required_keys: Sequence[str] = ()

    def __init__(self, config: Optional[Mapping[str, Any]] = None) -> None:
        self.config: Dict[str, Any] = dict(config or {})
        missing = [key for key in self.required_keys if not self.config.get(key)]
        if missing:
            raise ConfigurationError(
                f"Missing required configuration keys for {self.name}: {', '.join(missing)}"
            )

    def chat(self, messages: Sequence[Message], *, system_prompt: Optional[str] = None) -> str:
        raise NotImplementedError(f"{type(self).__name__} must implement chat")

    def test_connection(self) -> bool:
        try:
            self.chat([{"role": "user", "content": "Reply with the word ready."}])
        except LLMError as exc:
            LOGGER.warning("[%s] connection test failed: %s", self.name, exc)
            return False
        return True

    @staticmethod
    def _validate_messages(messages: Sequence[Message]) -> None:
        if not messages:
            raise ProviderError("At least one message is required.")
        for message in messages:
            if message.get("role") not in {"user", "assistant"} or not message.get("content"):
                raise ProviderError(f"Invalid chat message: {message!r}")


class OpenAIProvider(LLMProvider):
    name = "openai"
    required_keys = ("api_key", "model")

    def __init__(self, config: Optional[Mapping[str, Any]] = None, *, client: Any = None) -> None:
        super().__init__(config)
        if client is None:
            client = openai.OpenAI(api_key=self.config["api_key"])
        self._client = client

    def chat(self, messages: Sequence[Message], *, system_prompt: Optional[str] = None) -> str:
        self._validate_messages(messages)
        payload: List[Dict[str, str]] = []
        if system_prompt:
            payload.append({"role": "system", "content": system_prompt})
        payload.extend({"role": m["role"], "content": m["content"]} for m in messages)

        kwargs: Dict[str, Any] = {
            "model": self.config["model"],
            "messages": payload,
            "max_tokens": int(self.config.get("max_tokens") or 1024),
            "response_format": {"type": "json_object"},
        }
        if self.config.get("temperature") is not None:
            kwargs["temperature"] = float(self.config["temperature"])

        try:
            resp = self._client.chat.completions.create(**kwargs)
        except openai.RateLimitError as exc:
            raise RateLimitError(f"OpenAI rate limit: {exc}") from exc
        except Exception as exc:
            raise ProviderError(f"OpenAI API error: {exc}") from exc

        choices = getattr(resp, "choices", None) or []
        if not choices:
            raise ProviderError("OpenAI returned no choices.")
        content = getattr(getattr(choices[0], "message", None), "content", None) or ""
        if not content.strip():
            raise ProviderError("OpenAI returned an empty message.")
        return content.strip()


class AnthropicProvider(LLMProvider):
    name = "anthropic"
    required_keys = ("api_key", "model")

    def __init__(self, config: Optional[Mapping[str, Any]] = None, *, client: Any = None) -> None:
        super().__init__(config)
        if client is None:
            client = anthropic.Anthropic(api_key=self.config["api_key"])
        self._client = client

    def chat(self, messages: Sequence[Message], *, system_prompt: Optional[str] = None) -> str:
        self._validate_messages(messages)
        kwargs: Dict[str, Any] = {
            "model": self.config["model"],
            "max_tokens": int(self.config.get("max_tokens") or 1024),
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if self.config.get("temperature") is not None:
            kwargs["temperature"] = float(self.config["temperature"])

        try:
            msg = self._client.messages.create(**kwargs)
        except anthropic.RateLimitError as exc:
            raise RateLimitError(f"Anthropic rate limit: {exc}") from exc
        except Exception as exc:
            raise ProviderError(f"Anthropic API error: {exc}") from exc

        parts = [
            block.text
            for block in getattr(msg, "content", None) or []
            if getattr(block, "type", "") == "text"
        ]
        text = "".join(parts).strip()
        if not text:
            raise ProviderError("Anthropic returned no text content.")
        return text


class LocalProvider(LLMProvider):
    """Runs a Hugging Face causal LM from ``model_path`` on this machine.

    ``torch`` and ``transformers`` are imported on first use so the web app
    starts without them when a hosted provider is configured.
    """

    name = "local"
    required_keys = ("model_path",)

    def __init__(self, config: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(config)
        self._model = None
        self._tokenizer = None

    def _load(self) -> None:
        if self._model is not None:
            return
        try:
            import torch
            from transformers import AutoModelForCausalLM, AutoTokenizer
        except ImportError as exc:
            raise ConfigurationError(
                "Install the 'local' extra (torch, transformers) to use the local provider."
            ) from exc

        model_path = self.config["model_path"]
        LOGGER.info("Loading local text generator from %s", model_path)
        torch.manual_seed(int(self.config.get("seed", 42)))
        self._model = AutoModelForCausalLM.from_pretrained(model_path, device_map="auto", torch_dtype="auto")
        self._model.eval()
        self._tokenizer = AutoTokenizer.from_pretrained(model_path)
        if self._tokenizer.pad_token is None:
            self._tokenizer.pad_token = self._tokenizer.eos_token
        self._tokenizer.padding_side = "left"

    def chat(self, messages: Sequence[Message], *, system_prompt: Optional[str] = None) -> str:
        self._validate_messages(messages)
        self._load()
        import torch

        sections = [system_prompt] if system_prompt else []
        sections.extend(m["content"] for m in messages)
        prompt = "\n\n".join(sections)

        try:
            enc = self._tokenizer(prompt, return_tensors="pt").to(self._model.device)
            with torch.no_grad():
                out = self._model.generate(
                    **enc,
                    max_new_tokens=int(self.config.get("max_tokens") or 512),
                    temperature=float(self.config.get("temperature") or 0.8),
                    do_sample=True,
                    pad_token_id=self._tokenizer.pad_token_id,
                )
        except Exception as exc:
            raise ProviderError(f"Local generation failed: {exc}") from exc

        generated = out[0, enc["input_ids"].shape[-1]:]
        text = self._tokenizer.decode(generated, skip_special_tokens=True).strip()
        if not text:
            raise ProviderError("Local model returned an empty response.")
        return text


MOCK_BACKGROUND = {
    "background": (
        "Raised in the port city of Silverkeep, where salt winds carry tales of distant lands, "
        "the adventurer learned negotiation from a merchant father and old elven songs from a "
        "mother who performed at the city theater. When fire swept through that theater, the "
        "young hero's music steadied the crowd and guided them to safety, revealing a talent "
        "that could be more than entertainment. Since then they have travelled the realm "
        "collecting stories and songs, bending unjust rules to protect the innocent."
    ),
    "personality_traits": [
        "Charismatic performer who uses humor to diffuse tension",
        "Fiercely protective of artistic freedom and expression",
        "Curious collector of tales and musical traditions",
        "Impulsive when it comes to helping others in need",
    ],
}

MOCK_PERSONALITY_DETAILS = {
    "ideals": [
        {"ideal": "Freedom", "manifestation": "Bristles at any law that silences artists."},
        {"ideal": "Beauty", "manifestation": "Turns every tavern into a stage."},
    ],
    "bonds": [
        {"bond": "The Silverkeep theater", "manifestation": "Sends half of every purse to rebuild it."},
        {"bond": "A rival bard", "manifestation": "Cannot let a challenge from them go unanswered."},
    ],
    "flaws": [
        {"flaw": "Vanity", "manifestation": "Needs an audience to feel alive."},
        {"flaw": "Recklessness", "manifestation": "Leaps before the plan is finished."},
    ],
}

MOCK_EQUIPMENT = {
    "weapons": ["Rapier", "Hand Crossbow"],
    "armor": ["Studded Leather Armor"],
    "adventuring_gear": ["Backpack", "Bedroll", "Flute", "Waterskin"],
}

MOCK_SPELLS = {
    "cantrips": ["Vicious Mockery", "Minor Illusion"],
    "level_1_spells": ["Healing Word", "Sleep"],
}


class MockProvider(LLMProvider):
    """Offline provider returning canned JSON keyed on the request text."""

    name = "mock"

    def chat(self, messages: Sequence[Message], *, system_prompt: Optional[str] = None) -> str:
        self._validate_messages(messages)
        last = messages[-1]
        if last.get("role") != "user":
            return json.dumps({})

        request_text = last["content"].lower()
        # Personality prompts quote the background, so match them first.
        if "ideals" in request_text:
            response: Dict[str, Any] = MOCK_PERSONALITY_DETAILS
        elif "background" in request_text:
            response = MOCK_BACKGROUND
        elif "equipment" in request_text:
            response = MOCK_EQUIPMENT
        elif "spell" in request_text:
            response = MOCK_SPELLS
        else:
            response = {"error": "Unknown request type"}
        LOGGER.debug("[mock] responding to %r", last["content"][:80])
        return json.dumps(response)

    def test_connection(self) -> bool:
        return True


PROVIDERS = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "local": LocalProvider,
    "mock": MockProvider,
}


def provider_settings(app_config: Mapping[str, Any], provider: str) -> Dict[str, Any]:
    """Collect the settings for ``provider`` from a Flask config mapping."""

    if provider == "openai":
        return {
            "api_key": app_config.get("OPENAI_API_KEY"),
            "model": app_config.get("OPENAI_MODEL"),
            "max_tokens": app_config.get("OPENAI_MAX_TOKENS"),
            "temperature": app_config.get("OPENAI_TEMPERATURE"),
        }
    if provider == "anthropic":
        return {
            "api_key": app_config.get("ANTHROPIC_API_KEY"),
            "model": app_config.get("ANTHROPIC_MODEL"),
            "max_tokens": app_config.get("ANTHROPIC_MAX_TOKENS"),
            "temperature": app_config.get("ANTHROPIC_TEMPERATURE"),
        }
    if provider == "local":
        return {"model_path": app_config.get("TEXT_GENERATOR_MODEL_PATH")}
    return {}


def create_provider(app_config: Mapping[str, Any]) -> LLMProvider:
    name = str(app_config.get("LLM_PROVIDER") or "mock").strip().lower()
    provider_cls = PROVIDERS.get(name)
    if provider_cls is None:
        raise ConfigurationError(f"Unknown LLM provider: {name}")
    try:
        return provider_cls(provider_settings(app_config, name))
    except ConfigurationError:
        LOGGER.error("Failed to initialise LLM provider %s", name)
        raise


class LLMService:
    def __init__(self, provider: LLMProvider, *, max_retries: int = 3, retry_delay: float = 1.0) -> None:
        self.provider = provider
        self.max_retries = max(0, int(max_retries))
        self.retry_delay = max(0.0, float(retry_delay))

    @classmethod
    def from_config(cls, app_config: Mapping[str, Any]) -> "LLMService":
        return cls(
            create_provider(app_config),
            max_retries=app_config.get("LLM_MAX_RETRIES", 3),
            retry_delay=app_config.get("LLM_RETRY_DELAY", 1.0),
        )

    def chat(self, messages: Sequence[Message], *, system_prompt: Optional[str] = None) -> str:
        LOGGER.info("[%s] sending chat request with %d messages", self.provider.name, len(messages))
        attempt = 0
        while True:
            try:
                return self.provider.chat(messages, system_prompt=system_prompt)
            except RateLimitError as exc:
                if attempt >= self.max_retries:
                    raise ProviderError(f"Failed to process chat request: {exc}") from exc
                attempt += 1
                delay = self.retry_delay * attempt
                LOGGER.warning(
                    "[%s] rate limited; retry %d/%d in %.1fs",
                    self.provider.name,
                    attempt,
                    self.max_retries,
                    delay,
                )
                time.sleep(delay)
            except ProviderError:
                raise
            except Exception as exc:
                LOGGER.error("[%s] chat failed: %s", self.provider.name, exc)
                raise ProviderError(f"Failed to process chat request: {exc}") from exc
