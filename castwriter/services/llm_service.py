"""AI completion providers (Anthropic, OpenAI) and the per-model price table."""

import logging
import math
import re
from dataclasses import dataclass

from castwriter.config import Settings
from castwriter.errors import ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)

# USD per million tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    # Anthropic
    "claude-sonnet-4-20250514": (3.00, 15.00),
    "claude-3-5-sonnet-20241022": (3.00, 15.00),
    "claude-opus-4-20250514": (15.00, 75.00),
    "claude-3-5-haiku-20241022": (0.80, 4.00),
    # OpenAI
    "gpt-5-mini": (0.25, 2.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
}

_WORD_RE = re.compile(r"\S+")


@dataclass
class ModelConfig:
    model: str
    temperature: float = 0.7
    max_tokens: int = 4096


@dataclass
class LLMResponse:
    """Raw completion result. Cost is computed by the caller."""

    text: str
    input_tokens: int
    output_tokens: int
    model: str


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimated USD cost of one call. Unknown models cost 0 and log a warning."""
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        # Dated/suffixed model names share the base model's price
        pricing = next(
            (price for name, price in MODEL_PRICING.items() if model.startswith(name)), None
        )
    if pricing is None:
        logger.warning("Unknown model for cost calculation: %s", model)
        return 0.0
    input_price, output_price = pricing
    cost = (input_tokens / 1_000_000) * input_price + (output_tokens / 1_000_000) * output_price
    return round(cost, 6)


def estimate_tokens(text: str | None) -> int:
    """Rough token estimate: ~1.3 tokens per English word."""
    if not text:
        return 0
    return math.ceil(len(_WORD_RE.findall(text)) * 1.3)


class CompletionProvider:
    """Interface for a completion provider."""

    name = "base"

    def complete(
        self, system_prompt: str, user_message: str, model_config: ModelConfig
    ) -> LLMResponse:
        raise NotImplementedError


class AnthropicProvider(CompletionProvider):
    """Anthropic Messages API."""

    name = "anthropic"

    def __init__(self, api_key: str, timeout: float, max_retries: int):
        from anthropic import Anthropic

        self._timeout = timeout
        self._client = Anthropic(api_key=api_key, timeout=timeout, max_retries=max_retries)

    def complete(
        self, system_prompt: str, user_message: str, model_config: ModelConfig
    ) -> LLMResponse:
        import anthropic

        try:
            response = self._client.messages.create(
                model=model_config.model,
                max_tokens=model_config.max_tokens,
                temperature=model_config.temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_message}],
            )
        except anthropic.APITimeoutError as e:
            raise ProviderTimeoutError(self.name, self._timeout) from e
        except anthropic.APIStatusError as e:
            raise ProviderError(self.name, e.status_code, e.message) from e
        except anthropic.APIConnectionError as e:
            raise ProviderError(self.name, None, str(e)) from e

        text = ""
        for block in response.content:
            if block.type == "text":
                text += block.text

        logger.info(
            "Anthropic call: %d in / %d out tokens (%s)",
            response.usage.input_tokens,
            response.usage.output_tokens,
            model_config.model,
        )
        return LLMResponse(
            text=text,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=model_config.model,
        )


class OpenAIProvider(CompletionProvider):
    """OpenAI Chat Completions API."""

    name = "openai"

    def __init__(self, api_key: str, timeout: float, max_retries: int):
        from openai import OpenAI

        self._timeout = timeout
        self._client = OpenAI(api_key=api_key, timeout=timeout, max_retries=max_retries)

    def complete(
        self, system_prompt: str, user_message: str, model_config: ModelConfig
    ) -> LLMResponse:
        import openai

        kwargs = {
            "model": model_config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
        }
        if model_config.model.startswith("gpt-5"):
            # gpt-5 family takes max_completion_tokens and only its default temperature
            kwargs["max_completion_tokens"] = model_config.max_tokens
        else:
            kwargs["max_tokens"] = model_config.max_tokens
            kwargs["temperature"] = model_config.temperature

        try:
            response = self._client.chat.completions.create(**kwargs)
        except openai.APITimeoutError as e:
            raise ProviderTimeoutError(self.name, self._timeout) from e
        except openai.APIStatusError as e:
            raise ProviderError(self.name, e.status_code, e.message) from e
        except openai.APIConnectionError as e:
            raise ProviderError(self.name, None, str(e)) from e

        text = response.choices[0].message.content or ""
        input_tokens = response.usage.prompt_tokens
        output_tokens = response.usage.completion_tokens

        logger.info(
            "OpenAI call: %d in / %d out tokens (%s)",
            input_tokens,
            output_tokens,
            model_config.model,
        )
        return LLMResponse(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model_config.model,
        )


def build_providers(settings: Settings) -> dict[str, CompletionProvider]:
    """Construct the provider clients configured in settings.

    A provider without an API key is left out; stages assigned to it fail
    with a ProviderError when they run.
    """
    providers: dict[str, CompletionProvider] = {}
    if settings.anthropic_api_key:
        providers["anthropic"] = AnthropicProvider(
            settings.anthropic_api_key, settings.llm_timeout_seconds, settings.max_retries
        )
    if settings.openai_api_key:
        providers["openai"] = OpenAIProvider(
            settings.openai_api_key, settings.llm_timeout_seconds, settings.max_retries
        )
    if not providers:
        logger.warning("No ANTHROPIC_API_KEY or OPENAI_API_KEY set; all stages will fail")
    return providers
