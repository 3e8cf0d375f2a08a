"""
Gemini provider adapter.

Text and image generation through the google-genai SDK. Generated images
are written under ``<image_dir>/<campaign_ref>/`` and referenced by path.
"""

import logging
import re
import uuid
from pathlib import Path
from typing import Optional

import httpx
from google import genai
from google.genai import errors, types

from campaign_credits.core.tasks import Capability, TaskKind

from .base import Completion, ImageArtifact, ProviderAdapter
from .errors import ProviderPermanentError, ProviderTransientError, error_for_status
from .prompts import PromptContext, build_image_prompt

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_IMAGE_DIR = "campaign_images"

# Retired model names and their current replacements.
DEPRECATED_MODELS = {
    "gemini-1.5-flash": "gemini-2.5-flash",
    "gemini-1.5-pro": "gemini-2.5-pro",
    "gemini-2.0-flash-exp": "gemini-2.5-flash",
    "gemini-2.0-flash": "gemini-2.5-flash",
    "gemini-2.5-flash-preview-05-20": "gemini-2.5-flash",
    "gemini-2.5-pro-preview-05-06": "gemini-2.5-pro",
}

IMAGE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def migrate_model(model: str) -> str:
    """Map a retired Gemini model name to its replacement."""
    replacement = DEPRECATED_MODELS.get(model)
    if replacement is None:
        return model
    logger.warning("Gemini model %s is retired, using %s", model, replacement)
    return replacement


def _safe_segment(value: str) -> str:
    segment = _UNSAFE_PATH_CHARS.sub("-", value).strip(".-")
    return segment or "campaign"


class GeminiAdapter(ProviderAdapter):
    """Gemini adapter for text and image tasks."""

    provider_id = "gemini"
    label = "Gemini"
    capabilities = frozenset({Capability.TEXT, Capability.IMAGE})

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        image_dir: str = DEFAULT_IMAGE_DIR,
    ):
        """Initialize Gemini adapter.

        Args:
            model: Gemini model name; retired names are migrated
            api_key: API key; the SDK falls back to GEMINI_API_KEY when None
            timeout: Request timeout in seconds
            image_dir: Root directory for generated images

        Raises:
            ValueError: If model is missing/empty
        """
        super().__init__(migrate_model(model))
        self.timeout = timeout
        self.image_dir = Path(image_dir)
        self.client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),
        )

    def complete(
        self,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
        json_output: bool = False,
    ) -> Completion:
        config = types.GenerateContentConfig(
            system_instruction=system,
            temperature=temperature,
            max_output_tokens=max_tokens,
            response_mime_type="application/json" if json_output else None,
        )
        response = self._generate(user, config)

        text = response.text
        if not text:
            raise ProviderTransientError("Unexpected response format from Gemini.", self.provider_id)

        usage = response.usage_metadata
        tokens = (usage.total_token_count or 0) if usage else 0
        return Completion(text=text, tokens_used=tokens)

    def generate_image(self, kind: TaskKind, ctx: PromptContext) -> ImageArtifact:
        """Generate one image and save it to disk.

        Raises:
            ProviderError: Mapped from any SDK, response or file failure
        """
        prompt = build_image_prompt(kind, ctx)
        config = types.GenerateContentConfig(response_modalities=["IMAGE"])
        response = self._generate(prompt, config)

        inline = None
        for candidate in response.candidates or []:
            if candidate.content is None:
                continue
            for part in candidate.content.parts or []:
                if part.inline_data is not None and part.inline_data.data:
                    inline = part.inline_data
                    break
            if inline is not None:
                break

        if inline is None:
            raise ProviderTransientError("No image data in Gemini response.", self.provider_id)

        extension = IMAGE_EXTENSIONS.get(inline.mime_type or "")
        if extension is None:
            raise ProviderPermanentError(
                f"Gemini returned an unsupported image type: {inline.mime_type}",
                self.provider_id,
            )

        return ImageArtifact(
            ref=str(self._save_image(ctx.campaign_ref, kind, inline.data, extension)),
            mime_type=inline.mime_type,
            model=self.model,
        )

    def _generate(self, contents: str, config: types.GenerateContentConfig):
        try:
            return self.client.models.generate_content(
                model=self.model,
                contents=contents,
                config=config,
            )
        except errors.APIError as e:
            raise error_for_status(
                e.code or 500, f"Gemini API error: {e.message or e}", self.provider_id
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderTransientError(
                f"The request to Gemini timed out after {self.timeout:g} seconds.",
                self.provider_id,
            ) from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"Could not connect to Gemini: {e}", self.provider_id) from e

    def _save_image(self, campaign_ref: str, kind: TaskKind, data: bytes, extension: str) -> Path:
        directory = self.image_dir / _safe_segment(campaign_ref)
        path = directory / f"{kind.value}-{uuid.uuid4().hex[:12]}.{extension}"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise ProviderPermanentError(f"Failed to save image file: {e}", self.provider_id) from e
        logger.debug("Saved %s image to %s", kind.value, path)
        return path
