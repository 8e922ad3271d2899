"""
UnifiedModelClient - model invocation layer for Storyloom.
Routes role requests to OpenAI, OpenRouter, xAI, Mistral, Gemini and Anthropic.

Every call is bounded by one deadline and fails with a typed error:
ModelTimeout, ModelHTTPError or MalformedResponse. No retries happen here;
fallback policy belongs to the orchestration controller.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import anthropic
import google.generativeai as genai
import openai
from anthropic import AsyncAnthropic
from google.api_core import exceptions as google_exceptions
from openai import AsyncOpenAI

from ..config import LLMConfiguration, LLMProvider, ServiceRole

logger = logging.getLogger("storyloom.model_client")

# Providers served through the OpenAI-compatible chat completions API
OPENAI_COMPATIBLE = (
    LLMProvider.OPENAI,
    LLMProvider.OPENROUTER,
    LLMProvider.XAI,
    LLMProvider.MISTRAL,
)


class ModelInvocationError(Exception):
    """Base class for generation service failures."""
    kind = "model_error"

    def __init__(
        self,
        message: str,
        provider: Optional[LLMProvider] = None,
        model: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.model = model
        self.role: Optional[ServiceRole] = None


class ModelTimeout(ModelInvocationError):
    """The call did not finish before its deadline and was cancelled."""
    kind = "timeout"


class ModelHTTPError(ModelInvocationError):
    """The service answered with a non-success status or could not be reached."""
    kind = "http_error"

    def __init__(
        self,
        status: int,
        body: str = "",
        provider: Optional[LLMProvider] = None,
        model: Optional[str] = None,
    ):
        super().__init__(f"HTTP {status}: {body[:200]}", provider=provider, model=model)
        self.status = status
        self.body = body


class MalformedResponse(ModelInvocationError):
    """The service answered but the payload carried no usable text."""
    kind = "malformed_response"


@dataclass
class ModelResponse:
    """Unified response from any LLM provider."""
    content: str
    model: str
    provider: LLMProvider
    usage: Dict[str, int] = field(default_factory=dict)
    finish_reason: str = "stop"
    latency_ms: float = 0.0


class UnifiedModelClient:
    """
    Unified model client.
    Routes requests to the provider configured for each service role.
    SDK clients are created lazily and with SDK-level retries disabled.
    """

    def __init__(self, config: LLMConfiguration, timeout_seconds: Optional[float] = None):
        self.config = config
        self.timeout_seconds = timeout_seconds or config.orchestration.api_timeout_seconds
        self._compatible_clients: Dict[LLMProvider, AsyncOpenAI] = {}
        self._anthropic_client: Optional[AsyncAnthropic] = None
        self._gemini_configured = False

    def _get_compatible_client(self, provider: LLMProvider) -> AsyncOpenAI:
        """Get or create an OpenAI-compatible client for a provider."""
        if provider not in self._compatible_clients:
            provider_config = self.config.get_provider_config(provider)
            if not provider_config:
                raise ValueError(f"{provider.value} configuration not provided")
            self._compatible_clients[provider] = AsyncOpenAI(
                api_key=provider_config.api_key.get_secret_value(),
                base_url=provider_config.base_url,
                max_retries=0,
            )
        return self._compatible_clients[provider]

    def _get_anthropic_client(self) -> AsyncAnthropic:
        """Get or create Anthropic client."""
        if self._anthropic_client is None:
            if not self.config.claude:
                raise ValueError("Claude configuration not provided")
            self._anthropic_client = AsyncAnthropic(
                api_key=self.config.claude.api_key.get_secret_value(),
                max_retries=0,
            )
        return self._anthropic_client

    def _configure_gemini(self) -> None:
        """Configure Gemini API."""
        if not self._gemini_configured:
            if not self.config.gemini:
                raise ValueError("Gemini configuration not provided")
            genai.configure(api_key=self.config.gemini.api_key.get_secret_value())
            self._gemini_configured = True

    async def invoke(
        self,
        role: ServiceRole,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        structured: bool = False,
    ) -> ModelResponse:
        """
        Call the model assigned to a service role.

        Args:
            role: Service role whose configured model is used
            messages: Ordered role-tagged messages
            temperature: Override for the role's temperature
            max_tokens: Override for the role's max output size
            structured: Request a JSON object response

        Returns:
            ModelResponse with non-empty content

        Raises:
            ModelTimeout, ModelHTTPError, MalformedResponse
        """
        role_config = self.config.get_role_model(role)
        try:
            return await self.create_chat_completion(
                messages=messages,
                model=role_config.model,
                provider=role_config.provider,
                temperature=role_config.temperature if temperature is None else temperature,
                max_tokens=max_tokens or role_config.max_tokens,
                response_format={"type": "json_object"} if structured else None,
            )
        except ModelInvocationError as e:
            e.role = role
            raise

    async def create_chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: str,
        provider: LLMProvider,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, str]] = None,
    ) -> ModelResponse:
        """
        Create a chat completion bounded by the client deadline.

        On expiry the in-flight request is cancelled and ModelTimeout is raised.
        Provider SDK errors are translated into the typed failures above.
        """
        start_time = time.time()
        try:
            response = await asyncio.wait_for(
                self._dispatch(messages, model, provider, temperature, max_tokens, response_format),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[create_chat_completion] {provider.value}/{model} timed out after {self.timeout_seconds}s")
            raise ModelTimeout(
                f"{provider.value} request timed out after {self.timeout_seconds}s",
                provider=provider,
                model=model,
            ) from None
        except ModelInvocationError:
            raise
        except (openai.APITimeoutError, anthropic.APITimeoutError, google_exceptions.DeadlineExceeded) as e:
            raise ModelTimeout(str(e), provider=provider, model=model) from e
        except (openai.APIStatusError, anthropic.APIStatusError) as e:
            raise ModelHTTPError(
                status=e.status_code,
                body=_error_body(e),
                provider=provider,
                model=model,
            ) from e
        except (openai.APIConnectionError, anthropic.APIConnectionError) as e:
            raise ModelHTTPError(status=0, body=str(e), provider=provider, model=model) from e
        except google_exceptions.GoogleAPICallError as e:
            raise ModelHTTPError(
                status=int(e.code or 0),
                body=e.message or str(e),
                provider=provider,
                model=model,
            ) from e

        response.latency_ms = (time.time() - start_time) * 1000
        if not response.content or not response.content.strip():
            raise MalformedResponse(
                f"{provider.value} returned empty content",
                provider=provider,
                model=model,
            )
        logger.debug(
            f"[create_chat_completion] {provider.value}/{model} "
            f"{len(response.content)} chars in {response.latency_ms:.0f}ms"
        )
        return response

    async def _dispatch(
        self,
        messages: List[Dict[str, str]],
        model: str,
        provider: LLMProvider,
        temperature: float,
        max_tokens: Optional[int],
        response_format: Optional[Dict[str, str]],
    ) -> ModelResponse:
        if provider in OPENAI_COMPATIBLE:
            return await self._compatible_completion(
                messages, model, provider, temperature, max_tokens, response_format
            )
        elif provider == LLMProvider.CLAUDE:
            return await self._anthropic_completion(
                messages, model, temperature, max_tokens, response_format
            )
        elif provider == LLMProvider.GEMINI:
            return await self._gemini_completion(
                messages, model, temperature, max_tokens, response_format
            )
        else:
            raise ValueError(f"Unsupported provider: {provider}")

    async def _compatible_completion(
        self,
        messages: List[Dict[str, str]],
        model: str,
        provider: LLMProvider,
        temperature: float,
        max_tokens: Optional[int],
        response_format: Optional[Dict[str, str]],
    ) -> ModelResponse:
        """Create completion using an OpenAI-compatible API."""
        client = self._get_compatible_client(provider)

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if response_format:
            kwargs["response_format"] = response_format

        response = await client.chat.completions.create(**kwargs)

        if not response.choices or response.choices[0].message is None:
            raise MalformedResponse(
                f"{provider.value} returned no choices",
                provider=provider,
                model=model,
            )

        return ModelResponse(
            content=response.choices[0].message.content or "",
            model=model,
            provider=provider,
            usage={
                "prompt_tokens": response.usage.prompt_tokens if response.usage else 0,
                "completion_tokens": response.usage.completion_tokens if response.usage else 0,
                "total_tokens": response.usage.total_tokens if response.usage else 0,
            },
            finish_reason=response.choices[0].finish_reason or "stop",
        )

    async def _anthropic_completion(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: float,
        max_tokens: Optional[int],
        response_format: Optional[Dict[str, str]],
    ) -> ModelResponse:
        """Create completion using Anthropic API."""
        client = self._get_anthropic_client()

        # Extract system message if present
        system_message = ""
        chat_messages = []
        for msg in messages:
            if msg["role"] == "system":
                system_message = msg["content"]
            else:
                chat_messages.append(msg)

        if response_format and response_format.get("type") == "json_object":
            system_message += "\n\nYou MUST respond with valid JSON only, no other text."

        response = await client.messages.create(
            model=model,
            max_tokens=max_tokens or 4096,
            system=system_message,
            messages=chat_messages,
            temperature=temperature,
        )

        content = response.content[0].text if response.content else ""

        return ModelResponse(
            content=content,
            model=model,
            provider=LLMProvider.CLAUDE,
            usage={
                "prompt_tokens": response.usage.input_tokens if response.usage else 0,
                "completion_tokens": response.usage.output_tokens if response.usage else 0,
                "total_tokens": (
                    (response.usage.input_tokens + response.usage.output_tokens)
                    if response.usage else 0
                ),
            },
            finish_reason=response.stop_reason or "stop",
        )

    async def _gemini_completion(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: float,
        max_tokens: Optional[int],
        response_format: Optional[Dict[str, str]],
    ) -> ModelResponse:
        """Create completion using Google Gemini API."""
        self._configure_gemini()

        system_content = ""
        user_content = ""
        for msg in messages:
            if msg["role"] == "system":
                system_content = msg["content"]
            elif msg["role"] == "user":
                user_content += msg["content"]
            elif msg["role"] == "assistant":
                user_content += f"\n\nAssistant: {msg['content']}"

        full_prompt = f"{system_content}\n\n---\n\n{user_content}"

        generation_config: Dict[str, Any] = {
            "temperature": temperature,
            "max_output_tokens": max_tokens,
        }
        if response_format and response_format.get("type") == "json_object":
            generation_config["response_mime_type"] = "application/json"

        gemini_model = genai.GenerativeModel(model)
        response = await gemini_model.generate_content_async(
            full_prompt,
            generation_config=generation_config,
        )

        # .text raises when the candidate was blocked or carries no parts
        try:
            content = response.text
        except ValueError as e:
            raise MalformedResponse(
                f"gemini returned no text: {e}",
                provider=LLMProvider.GEMINI,
                model=model,
            ) from e

        return ModelResponse(
            content=content or "",
            model=model,
            provider=LLMProvider.GEMINI,
            usage={
                "prompt_tokens": 0,
                "completion_tokens": 0,
                "total_tokens": 0,
            },
            finish_reason="stop",
        )


def _error_body(error: Exception) -> str:
    body = getattr(error, "body", None)
    return str(body) if body else str(error)
