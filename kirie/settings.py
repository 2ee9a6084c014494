"""Environment-driven configuration for the Kirie Studio backend."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_FALLBACK_CHAIN = ("flux", "procedural")
DEFAULT_SUBSTITUTIONS = {"nanobanana": "turbo"}


@dataclass(slots=True)
class Settings:
    """Runtime settings shared by the dispatcher, adapters and API layer."""

    gemini_api_key: str | None = None
    replicate_api_token: str | None = None
    gemini_image_model: str = "gemini-2.5-flash-image"
    gemini_chat_model: str = "gemini-2.5-flash"
    imagen_model: str = "imagen-3.0-generate-002"
    replicate_model: str = "black-forest-labs/flux-schnell"
    provider_timeout: float = 10.0
    request_budget: float = 10.0
    max_retries: int = 2
    retry_backoff: float = 1.0
    fallback_chain: tuple[str, ...] = DEFAULT_FALLBACK_CHAIN
    substitutions: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SUBSTITUTIONS))
    inline_images: bool = False
    max_image_bytes: int = 10 * 1024 * 1024
    styles_file: Path | None = None
    log_level: str = "INFO"
    log_file: Path | None = None


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_list(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    return tuple(item.strip().lower() for item in value.split(",") if item.strip())


def _as_mapping(value: str | None, default: dict[str, str]) -> dict[str, str]:
    """Parse ``a:b,c:d`` pairs; an empty string disables every entry."""
    if value is None:
        return dict(default)
    mapping: dict[str, str] = {}
    for pair in value.split(","):
        if ":" not in pair:
            continue
        source, target = pair.split(":", 1)
        if source.strip() and target.strip():
            mapping[source.strip().lower()] = target.strip().lower()
    return mapping


def load_settings(env_file: str | None = None) -> Settings:
    """Return a Settings instance built from the process environment."""
    load_dotenv(env_file)

    styles_file = os.getenv("STYLES_FILE")
    log_file = os.getenv("LOG_FILE")
    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
        replicate_api_token=os.getenv("REPLICATE_API_TOKEN"),
        gemini_image_model=os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image"),
        gemini_chat_model=os.getenv("GEMINI_CHAT_MODEL", "gemini-2.5-flash"),
        imagen_model=os.getenv("IMAGEN_MODEL", "imagen-3.0-generate-002"),
        replicate_model=os.getenv("REPLICATE_MODEL", "black-forest-labs/flux-schnell"),
        provider_timeout=float(os.getenv("PROVIDER_TIMEOUT", "10")),
        request_budget=float(os.getenv("REQUEST_BUDGET_SECONDS", "10")),
        max_retries=max(1, int(os.getenv("MAX_RETRIES", "2"))),
        retry_backoff=float(os.getenv("RETRY_BACKOFF", "1.0")),
        fallback_chain=_as_list(os.getenv("FALLBACK_CHAIN"), DEFAULT_FALLBACK_CHAIN),
        substitutions=_as_mapping(os.getenv("PROVIDER_SUBSTITUTIONS"), DEFAULT_SUBSTITUTIONS),
        inline_images=_as_bool(os.getenv("INLINE_IMAGES"), False),
        max_image_bytes=int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024))),
        styles_file=Path(styles_file).expanduser() if styles_file else None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_file=Path(log_file).expanduser() if log_file else None,
    )
