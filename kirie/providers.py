"""Provider adapters for the external image services.

Every adapter exposes ``async generate(prompt, source_image=None)`` and
returns a :class:`ProviderImage`, tagging the image with the provider that
actually produced it. Failures are raised as :class:`ProviderError`; adapters
never swallow them.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from kirie.errors import ProviderError, ValidationError
from kirie.settings import Settings

logger = logging.getLogger(__name__)

GOOGLE_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
POLLINATIONS_BASE = "https://image.pollinations.ai/prompt"
REPLICATE_API_BASE = "https://api.replicate.com/v1/models"

# Decoded payloads below this size are treated as broken responses.
MIN_IMAGE_BYTES = 100

DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)


def _to_data_url(image_b64: str, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{image_b64}"


@dataclass(frozen=True, slots=True)
class SourceImage:
    """An uploaded image forwarded to providers that accept one."""

    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_payload(
        cls,
        payload: str,
        mime_type: str | None = None,
        max_bytes: int | None = None,
    ) -> "SourceImage":
        """Parse a ``data:`` URI or bare base64 string."""
        raw = (payload or "").strip()
        match = DATA_URL_RE.match(raw)
        if match:
            mime = match.group("mime")
            raw = match.group("data")
        else:
            mime = mime_type or "image/png"
        if not mime.startswith("image/"):
            raise ValidationError(f"Unsupported image type: {mime}")
        try:
            data = base64.b64decode("".join(raw.split()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError("Image data is not valid base64.") from exc
        if not data:
            raise ValidationError("Image data is empty.")
        if max_bytes is not None and len(data) > max_bytes:
            raise ValidationError(f"Image is too large. Keep it under {max_bytes // (1024 * 1024)}MB.")
        return cls(data=data, mime_type=mime)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")


@dataclass(frozen=True, slots=True)
class ImageRef:
    """Where the image lives: a hosted URL, inline base64 bytes or inline SVG markup."""

    kind: str
    value: str
    mime_type: str = "image/png"

    def as_url(self) -> str:
        if self.kind == "url":
            return self.value
        if self.kind == "svg":
            svg_b64 = base64.b64encode(self.value.encode("utf-8")).decode("utf-8")
            return _to_data_url(svg_b64, "image/svg+xml")
        return _to_data_url(self.value, self.mime_type)


@dataclass(frozen=True, slots=True)
class ProviderImage:
    provider: str
    ref: ImageRef


def open_client(timeout: float, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, transport=transport)


def safe_provider_error(provider_name: str, response: httpx.Response) -> ProviderError:
    # 4xx other than timeouts and rate limits will fail the same way on retry.
    retryable = response.status_code >= 500 or response.status_code in (408, 429)
    try:
        payload = response.json()
    except ValueError:
        return ProviderError(
            provider_name,
            f"returned an unexpected error ({response.status_code}).",
            status_code=response.status_code,
            retryable=retryable,
        )

    error_obj = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error_obj, dict):
        message = str(error_obj.get("message", ""))
        code = str(error_obj.get("code", ""))
        if "moderation" in code or "safety" in message.lower():
            return ProviderError(
                provider_name,
                "the prompt was blocked by the safety filter.",
                status_code=response.status_code,
                retryable=False,
            )
        if message:
            return ProviderError(provider_name, message, status_code=response.status_code, retryable=retryable)
    elif isinstance(error_obj, str) and error_obj:
        return ProviderError(provider_name, error_obj, status_code=response.status_code, retryable=retryable)

    return ProviderError(
        provider_name,
        f"error ({response.status_code}).",
        status_code=response.status_code,
        retryable=retryable,
    )


def _checked_inline_image(provider_name: str, image_b64: str, mime_type: str) -> ImageRef:
    try:
        decoded = base64.b64decode(image_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProviderError(provider_name, "returned malformed base64 image data.") from exc
    if len(decoded) < MIN_IMAGE_BYTES:
        raise ProviderError(provider_name, f"returned an undersized image payload ({len(decoded)} bytes).")
    return ImageRef(kind="base64", value=image_b64, mime_type=mime_type)


class ImageProvider:
    """Common plumbing for the provider adapters."""

    id = ""
    label = ""
    requires_key: str | None = None
    accepts_source_image = False
    offline = False

    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout = timeout
        self.transport = transport

    @property
    def api_key(self) -> str | None:
        return None

    def has_key(self) -> bool:
        return self.requires_key is None or bool(self.api_key)

    def _require_key(self) -> str:
        if not self.api_key:
            raise ProviderError(self.label, f"API key not found in {self.requires_key}", retryable=False)
        return self.api_key

    async def generate(self, prompt: str, source_image: SourceImage | None = None) -> ProviderImage:
        raise NotImplementedError

    async def _post_json(self, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with open_client(self.timeout, self.transport) as client:
                response = await client.post(url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderError(self.label, f"timed out after {self.timeout:.0f}s.") from exc
        except httpx.HTTPError as exc:
            # The request URL may carry an API key; only the error class is reported.
            raise ProviderError(self.label, f"network error ({exc.__class__.__name__}).") from exc

        if response.status_code >= 400:
            raise safe_provider_error(self.label, response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(self.label, "returned a non-JSON response.") from exc
        if not isinstance(payload, dict):
            raise ProviderError(self.label, "returned an unexpected response schema.")
        return payload


class PollinationsProvider(ImageProvider):
    """URL-synthesising adapter for image.pollinations.ai.

    No network call is made here; the returned URL is relayed to the client or
    dereferenced by the dispatcher. When ``substitute`` is set, the request is
    rendered by that model instead and the returned image is tagged with it.
    """

    def __init__(
        self,
        model: str,
        substitute: str | None = None,
        width: int = 1024,
        height: int = 1024,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.id = model
        self.label = model.upper()
        self.model = model
        self.substitute = substitute if substitute and substitute != model else None
        self.width = width
        self.height = height

    def build_url(self, prompt: str, model: str, seed: int) -> str:
        query = urlencode(
            {
                "width": self.width,
                "height": self.height,
                "model": model,
                "nologo": "true",
                "enhance": "true",
                "seed": seed,
            }
        )
        return f"{POLLINATIONS_BASE}/{quote(prompt, safe='')}?{query}"

    async def generate(self, prompt: str, source_image: SourceImage | None = None) -> ProviderImage:
        model = self.model
        if self.substitute:
            logger.warning("Pollinations model '%s' is substituted by '%s'", self.model, self.substitute)
            model = self.substitute
        seed = int(time.time() * 1000)
        return ProviderImage(provider=model, ref=ImageRef(kind="url", value=self.build_url(prompt, model, seed)))


class GeminiImageProvider(ImageProvider):
    id = "gemini"
    label = "GEMINI"
    requires_key = "GEMINI_API_KEY"
    accepts_source_image = True

    def __init__(self, api_key: str | None, model: str = "gemini-2.5-flash-image", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._api_key = api_key
        self.model = model

    @property
    def api_key(self) -> str | None:
        return self._api_key

    async def generate(self, prompt: str, source_image: SourceImage | None = None) -> ProviderImage:
        api_key = self._require_key()
        parts: list[dict[str, Any]] = [{"text": prompt}]
        if source_image is not None:
            parts.append({"inlineData": {"mimeType": source_image.mime_type, "data": source_image.to_base64()}})

        payload = await self._post_json(
            f"{GOOGLE_API_BASE}/{self.model}:generateContent",
            params={"key": api_key},
            headers={"Content-Type": "application/json"},
            json={
                "contents": [{"parts": parts}],
                "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
            },
        )

        for candidate in payload.get("candidates") or []:
            candidate_parts = ((candidate.get("content") or {}).get("parts")) or []
            for part in candidate_parts:
                inline_data = part.get("inline_data") or part.get("inlineData")
                if inline_data and inline_data.get("data"):
                    mime = inline_data.get("mime_type") or inline_data.get("mimeType") or "image/png"
                    return ProviderImage(self.id, _checked_inline_image(self.label, inline_data["data"], mime))

        raise ProviderError(self.label, "response contained no image part.")


class ImagenProvider(ImageProvider):
    id = "imagen"
    label = "IMAGEN"
    requires_key = "GEMINI_API_KEY"

    def __init__(self, api_key: str | None, model: str = "imagen-3.0-generate-002", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._api_key = api_key
        self.model = model

    @property
    def api_key(self) -> str | None:
        return self._api_key

    async def generate(self, prompt: str, source_image: SourceImage | None = None) -> ProviderImage:
        api_key = self._require_key()
        payload = await self._post_json(
            f"{GOOGLE_API_BASE}/{self.model}:predict",
            params={"key": api_key},
            headers={"Content-Type": "application/json"},
            json={"instances": [{"prompt": prompt}], "parameters": {"sampleCount": 1}},
        )
        for prediction in payload.get("predictions") or []:
            image_b64 = prediction.get("bytesBase64Encoded")
            if image_b64:
                mime = prediction.get("mimeType") or "image/png"
                return ProviderImage(self.id, _checked_inline_image(self.label, image_b64, mime))

        raise ProviderError(self.label, "response contained no predictions.")


class ReplicateProvider(ImageProvider):
    id = "replicate"
    label = "REPLICATE"
    requires_key = "REPLICATE_API_TOKEN"

    def __init__(self, api_token: str | None, model: str = "black-forest-labs/flux-schnell", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._api_token = api_token
        self.model = model

    @property
    def api_key(self) -> str | None:
        return self._api_token

    async def generate(self, prompt: str, source_image: SourceImage | None = None) -> ProviderImage:
        token = self._require_key()
        payload = await self._post_json(
            f"{REPLICATE_API_BASE}/{self.model}/predictions",
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Prefer": "wait",
            },
            json={"input": {"prompt": prompt, "aspect_ratio": "1:1", "output_format": "png"}},
        )

        status = payload.get("status")
        if status in ("failed", "canceled"):
            raise ProviderError(self.label, f"prediction {status}: {payload.get('error') or 'no detail'}")
        output = payload.get("output")
        if isinstance(output, list):
            output = output[0] if output else None
        if not isinstance(output, str) or not output.startswith(("http://", "https://")):
            raise ProviderError(self.label, f"prediction finished without an image URL (status {status}).")
        return ProviderImage(self.id, ImageRef(kind="url", value=output))


def render_procedural_svg(prompt: str, size: int = 512) -> str:
    """Deterministic paper-cut rosette derived from the prompt text."""
    digest = hashlib.sha256(prompt.encode("utf-8")).digest()
    petals = 6 + (len(prompt) + digest[0]) % 7
    hue = digest[1] * 360 // 256
    rings = 2 + digest[2] % 3
    center = size / 2

    shapes: list[str] = []
    for ring in range(rings, 0, -1):
        radius = center * 0.85 * ring / rings
        rx = radius * 0.32
        ry = radius * 0.5
        fill = f"hsl({(hue + ring * 37) % 360}, 70%, {30 + ring * 12}%)"
        offset = 180 / petals * (ring % 2)
        for index in range(petals):
            angle = 360 / petals * index + offset
            cy = center - radius + ry
            shapes.append(
                f'<ellipse cx="{center:.1f}" cy="{cy:.1f}" rx="{rx:.1f}" ry="{ry:.1f}" '
                f'fill="{fill}" transform="rotate({angle:.1f} {center:.1f} {center:.1f})"/>'
            )
    # Cut-outs along a circle, in background colour.
    holes = petals * 2
    for index in range(holes):
        theta = 2 * math.pi * index / holes
        x = center + math.cos(theta) * center * 0.3
        y = center + math.sin(theta) * center * 0.3
        shapes.append(f'<circle cx="{x:.1f}" cy="{y:.1f}" r="{size * 0.02:.1f}" fill="#fdfaf3"/>')

    return (
        f'<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 {size} {size}" width="{size}" height="{size}">'
        f'<rect width="{size}" height="{size}" fill="#fdfaf3"/>'
        + "".join(shapes)
        + f'<circle cx="{center:.1f}" cy="{center:.1f}" r="{size * 0.06:.1f}" fill="hsl({hue}, 70%, 25%)"/>'
        + "</svg>"
    )


class ProceduralProvider(ImageProvider):
    """Offline last resort; always succeeds with a placeholder SVG."""

    id = "procedural"
    label = "PROCEDURAL"
    offline = True

    async def generate(self, prompt: str, source_image: SourceImage | None = None) -> ProviderImage:
        return ProviderImage(self.id, ImageRef(kind="svg", value=render_procedural_svg(prompt), mime_type="image/svg+xml"))


async def fetch_image(
    url: str,
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
    provider_name: str = "DOWNLOAD",
) -> ImageRef:
    """Dereference a hosted image into an inline base64 reference."""
    try:
        async with open_client(timeout, transport) as client:
            response = await client.get(url, follow_redirects=True)
    except httpx.TimeoutException as exc:
        raise ProviderError(provider_name, f"image download timed out after {timeout:.0f}s.") from exc
    except httpx.HTTPError as exc:
        raise ProviderError(provider_name, f"image download failed ({exc.__class__.__name__}).") from exc

    if response.status_code >= 400:
        raise ProviderError(
            provider_name,
            f"image download failed ({response.status_code}).",
            status_code=response.status_code,
        )
    mime = response.headers.get("content-type", "image/png").split(";")[0].strip() or "image/png"
    if not mime.startswith("image/"):
        raise ProviderError(provider_name, f"download returned {mime} instead of an image.")
    content = response.content
    if len(content) < MIN_IMAGE_BYTES:
        raise ProviderError(provider_name, f"downloaded image is undersized ({len(content)} bytes).")
    return ImageRef(kind="base64", value=base64.b64encode(content).decode("utf-8"), mime_type=mime)


def build_providers(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, ImageProvider]:
    """Instantiate the adapter set for a deployment."""
    common: dict[str, Any] = {"timeout": settings.provider_timeout, "transport": transport}
    providers: list[ImageProvider] = [
        PollinationsProvider(model, substitute=settings.substitutions.get(model), **common)
        for model in ("flux", "turbo", "nanobanana")
    ]
    providers.extend(
        [
            GeminiImageProvider(settings.gemini_api_key, settings.gemini_image_model, **common),
            ImagenProvider(settings.gemini_api_key, settings.imagen_model, **common),
            ReplicateProvider(settings.replicate_api_token, settings.replicate_model, **common),
            ProceduralProvider(**common),
        ]
    )
    return {provider.id: provider for provider in providers}
