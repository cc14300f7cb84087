"""
Generation collaborators.

A generator turns a RequestGeneration command into display text. The
session runtime owns timeouts, cancellation and fallback; generators just
produce text or raise.

- TemplateGenerator: returns the deterministic fallback text (no model)
- HuggingFaceGenerator: rephrases it with a local HuggingFace model
"""

import asyncio
import logging

from blueprint_coach.commands import RequestGeneration
from blueprint_coach.errors import GenerationUnavailable
from blueprint_coach.utils.prompt_builder import PromptBuildError, build_prompt

logger = logging.getLogger(__name__)


class Generator:
    """Generation interface."""

    async def generate(self, request: RequestGeneration) -> str:
        raise NotImplementedError


class TemplateGenerator(Generator):
    """Deterministic generator used when no model is configured."""

    async def generate(self, request: RequestGeneration) -> str:
        return request.fallback_text


class HuggingFaceGenerator(Generator):
    """
    Async adapter over the blocking HuggingFace client.

    Model calls run in a worker thread so the event loop keeps serving
    other sessions while the GPU works.
    """

    def __init__(self, client, max_tokens: int = 160, temperature: float = 0.4):
        if not hasattr(client, "generate"):
            raise TypeError("client must have generate() method")
        self.client = client
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def generate(self, request: RequestGeneration) -> str:
        """
        Raises:
            GenerationUnavailable: If the prompt cannot be built or the
                                   model returns nothing usable
        """
        try:
            prompt = build_prompt(request)
        except PromptBuildError as e:
            raise GenerationUnavailable(str(e)) from e

        text = await asyncio.to_thread(
            self.client.generate, prompt, self.max_tokens, self.temperature
        )
        text = (text or "").strip()
        if not text:
            raise GenerationUnavailable(f"Model returned no text for '{request.purpose}'")
        return text
