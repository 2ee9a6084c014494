"""Style-to-provider dispatch with bounded retries and a fallback chain.

``generate_with_style`` resolves the style, builds the prompt and calls the
style's provider up to ``max_retries`` times. When those attempts are spent,
each provider in the fallback chain is tried once. The reported model always
names the provider that actually produced the image, suffixed with
``(Fallback)`` when that differs from the style's provider.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Mapping, Sequence

import httpx

from kirie.errors import ConfigurationError, GenerationError, ProviderError
from kirie.providers import ImageProvider, ImageRef, ProviderImage, SourceImage, fetch_image
from kirie.settings import Settings
from kirie.styles import StyleConfig, StyleRegistry, build_prompt

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 3.0


@dataclass(slots=True)
class GenerationResult:
    image: ImageRef
    provider: str
    reported_model: str
    style: StyleConfig
    prompt: str
    attempt_count: int
    used_fallback: bool

    @property
    def image_url(self) -> str:
        return self.image.as_url()


class Dispatcher:
    """Resolve a style to a provider and drive the attempt/fallback sequence."""

    def __init__(
        self,
        registry: StyleRegistry,
        providers: Mapping[str, ImageProvider],
        max_retries: int = 2,
        backoff: float = 1.0,
        fallback_chain: Sequence[str] = ("flux", "procedural"),
        request_budget: float = 10.0,
        inline_images: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.registry = registry
        self.providers = dict(providers)
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.fallback_chain = tuple(fallback_chain)
        self.request_budget = request_budget
        self.inline_images = inline_images
        self.transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: StyleRegistry,
        providers: Mapping[str, ImageProvider],
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "Dispatcher":
        return cls(
            registry,
            providers,
            max_retries=settings.max_retries,
            backoff=settings.retry_backoff,
            fallback_chain=settings.fallback_chain,
            request_budget=settings.request_budget,
            inline_images=settings.inline_images,
            transport=transport,
        )

    def label_for(self, provider_id: str) -> str:
        provider = self.providers.get(provider_id)
        return provider.label if provider is not None else provider_id.upper()

    async def generate_with_style(
        self,
        user_prompt: str,
        style_id: str | None,
        source_image: SourceImage | None = None,
        max_retries: int | None = None,
    ) -> GenerationResult:
        style = self.registry.resolve(style_id)
        primary = self.providers.get(style.provider)
        if primary is None:
            raise ConfigurationError(f"Style '{style.id}' uses unknown provider '{style.provider}'")

        prompt = build_prompt(user_prompt, style)
        deadline = time.monotonic() + self.request_budget
        retries = max(1, max_retries or self.max_retries)
        errors: list[ProviderError] = []
        attempts = 0

        logger.info("Generating style=%s provider=%s", style.id, primary.id)
        for attempt in range(1, retries + 1):
            if self._remaining(deadline) <= 0:
                logger.warning("Request budget spent before attempt %d", attempt)
                break
            attempts += 1
            try:
                produced = await self._attempt(primary, prompt, source_image, deadline)
            except ProviderError as exc:
                errors.append(exc)
                logger.warning("Attempt %d/%d with %s failed: %s", attempt, retries, primary.id, exc)
                if not exc.retryable or attempt == retries:
                    break
                delay = min(self.backoff * attempt, MAX_BACKOFF_SECONDS, max(0.0, self._remaining(deadline)))
                if delay > 0:
                    await asyncio.sleep(delay)
                continue
            return self._result(style, prompt, produced, attempts, requested=primary.id)

        for provider_id in self.fallback_chain:
            if provider_id == primary.id:
                continue
            fallback = self.providers.get(provider_id)
            if fallback is None:
                logger.error("Fallback provider '%s' is not configured", provider_id)
                continue
            attempts += 1
            try:
                produced = await self._attempt(fallback, prompt, source_image, deadline)
            except ProviderError as exc:
                errors.append(exc)
                logger.warning("Fallback %s failed: %s", provider_id, exc)
                continue
            logger.warning("Style %s served by fallback provider %s", style.id, produced.provider)
            return self._result(style, prompt, produced, attempts, requested=primary.id)

        message = str(errors[-1]) if errors else "No provider could be attempted within the request budget."
        raise GenerationError(f"Image generation failed after {attempts} attempts. {message}", attempts, errors)

    def _remaining(self, deadline: float) -> float:
        return deadline - time.monotonic()

    async def _attempt(
        self,
        provider: ImageProvider,
        prompt: str,
        source_image: SourceImage | None,
        deadline: float,
    ) -> ProviderImage:
        # Offline providers finish instantly and stay usable once the budget is spent.
        timeout = None if provider.offline else self._remaining(deadline)
        if timeout is not None and timeout <= 0:
            raise ProviderError(provider.label, "request budget exhausted before the call started.", retryable=False)
        try:
            produced = await asyncio.wait_for(self._call(provider, prompt, source_image), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderError(provider.label, "request budget exhausted.", retryable=False) from exc
        return produced

    async def _call(
        self,
        provider: ImageProvider,
        prompt: str,
        source_image: SourceImage | None,
    ) -> ProviderImage:
        produced = await provider.generate(prompt, source_image if provider.accepts_source_image else None)
        if self.inline_images and produced.ref.kind == "url":
            ref = await fetch_image(
                produced.ref.value,
                timeout=provider.timeout,
                transport=self.transport,
                provider_name=self.label_for(produced.provider),
            )
            produced = ProviderImage(produced.provider, ref)
        return produced

    def _result(
        self,
        style: StyleConfig,
        prompt: str,
        produced: ProviderImage,
        attempts: int,
        requested: str,
    ) -> GenerationResult:
        used_fallback = produced.provider != requested
        label = self.label_for(produced.provider)
        if used_fallback:
            logger.warning("Requested %s but image came from %s", requested, produced.provider)
            label = f"{label} (Fallback)"
        return GenerationResult(
            image=produced.ref,
            provider=produced.provider,
            reported_model=label,
            style=style,
            prompt=prompt,
            attempt_count=attempts,
            used_fallback=used_fallback,
        )
