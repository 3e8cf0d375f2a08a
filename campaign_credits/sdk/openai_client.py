"""
OpenAI provider adapter.

Text generation through chat completions. OpenAI is not used for images.
"""

import logging
from typing import Optional

import openai
from openai import OpenAI

from .base import Completion, ProviderAdapter
from .errors import (
    ProviderPermanentError,
    ProviderRateLimitedError,
    ProviderTransientError,
    error_for_status,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class OpenAIAdapter(ProviderAdapter):
    """Chat-completions adapter.

    SDK retries are disabled: a failed call is refunded and surfaced, and
    the operator decides whether to run the field again.
    """

    provider_id = "openai"
    label = "OpenAI"

    def __init__(self, model: str, api_key: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT):
        """Initialize OpenAI adapter.

        Args:
            model: Chat model name (e.g. "gpt-4o-mini")
            api_key: API key; the SDK falls back to OPENAI_API_KEY when None
            timeout: Request timeout in seconds

        Raises:
            ValueError: If model is missing/empty
        """
        super().__init__(model)
        self.timeout = timeout
        self.client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def complete(
        self,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
        json_output: bool = False,
    ) -> Completion:
        """Create one chat completion.

        Raises:
            ProviderError: Mapped from any SDK or response failure
        """
        kwargs = {}
        if json_output:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except openai.RateLimitError as e:
            raise ProviderRateLimitedError(
                "OpenAI rate limit exceeded.", self.provider_id, 429
            ) from e
        except openai.APIStatusError as e:
            raise error_for_status(e.status_code, f"OpenAI API error: {e.message}", self.provider_id) from e
        except openai.APITimeoutError as e:
            raise ProviderTransientError(
                f"The request to OpenAI timed out after {self.timeout:g} seconds.",
                self.provider_id,
            ) from e
        except openai.APIConnectionError as e:
            raise ProviderTransientError(
                f"Could not connect to OpenAI: {e.message}", self.provider_id
            ) from e
        except openai.OpenAIError as e:
            raise ProviderPermanentError(f"OpenAI client error: {e}", self.provider_id) from e

        if not response.choices or response.choices[0].message.content is None:
            raise ProviderTransientError("Unexpected response format from OpenAI.", self.provider_id)

        tokens = response.usage.total_tokens if response.usage else 0
        logger.debug("OpenAI %s completion used %d tokens", self.model, tokens)
        return Completion(text=response.choices[0].message.content, tokens_used=tokens)
