"""
Provider adapter contract.

One adapter per provider. Adapters take a task kind and prompt context and
return an artifact, or raise a :class:`ProviderError` subclass. They never
touch the ledger.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict

from campaign_credits.core.tasks import Capability, TaskKind

from .errors import ProviderUnsupportedError
from .prompts import PromptContext, build_text_prompt, parse_text_fields

__all__ = ["ImageArtifact", "PromptContext", "ProviderAdapter", "TextArtifact"]


@dataclass(frozen=True)
class TextArtifact:
    """Generated text fields, keyed by field name."""
    fields: Dict[str, Any]
    model: str = ""
    tokens_used: int = 0

    def as_value(self) -> Dict[str, Any]:
        return dict(self.fields)


@dataclass(frozen=True)
class ImageArtifact:
    """Reference to a generated image (a file path for local storage)."""
    ref: str
    mime_type: str = "image/png"
    model: str = ""

    def as_value(self) -> Dict[str, Any]:
        return {"image": self.ref, "mime_type": self.mime_type}


@dataclass(frozen=True)
class Completion:
    """Raw text returned by a provider call."""
    text: str
    tokens_used: int = 0


class ProviderAdapter(ABC):
    """Base class for provider adapters.

    Subclasses implement :meth:`complete`; image-capable providers also
    override :meth:`generate_image`.
    """

    provider_id = ""
    label = ""
    capabilities = frozenset({Capability.TEXT})

    def __init__(self, model: str):
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.model = model

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def generate_text(self, kind: TaskKind, ctx: PromptContext) -> TextArtifact:
        """Generate the text fields of one task.

        Raises:
            ProviderError: Any provider or parsing failure
        """
        if not self.supports(Capability.TEXT):
            raise ProviderUnsupportedError(
                f"{self.label or self.provider_id} does not support text generation",
                self.provider_id,
            )
        prompt = build_text_prompt(kind, ctx)
        completion = self.complete(
            system=prompt.system,
            user=prompt.user,
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
            json_output=prompt.json_output,
        )
        return TextArtifact(
            fields=parse_text_fields(kind, completion.text),
            model=self.model,
            tokens_used=completion.tokens_used,
        )

    def generate_image(self, kind: TaskKind, ctx: PromptContext) -> ImageArtifact:
        """Generate one image. Not supported unless a subclass overrides it."""
        raise ProviderUnsupportedError(
            f"{self.label or self.provider_id} does not support image generation",
            self.provider_id,
        )

    @abstractmethod
    def complete(
        self,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
        json_output: bool = False,
    ) -> Completion:
        """Send one chat completion and return its text."""
