"""Conversational front-end that can hand image requests to the dispatcher."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

from kirie.dispatcher import Dispatcher, GenerationResult
from kirie.errors import ProviderError
from kirie.providers import GOOGLE_API_BASE, SourceImage, open_client, safe_provider_error

logger = logging.getLogger(__name__)

GENERATE_MARKER_RE = re.compile(r"\[GENERATE:\s*(?P<prompt>[^\]]+?)\s*\]", re.IGNORECASE)

CHAT_SYSTEM_PROMPT = (
    "You are the assistant of AI Kirie Studio, a paper-cut (kirie) art generator. "
    "Help the user shape ideas for paper-cut artworks and answer briefly in the user's language. "
    "When the user asks for an image, reply normally and append exactly one marker of the form "
    "[GENERATE: <concise English description of the scene>] at the end of your reply. "
    "Never emit the marker otherwise."
)

# Gemini only knows the "user" and "model" roles.
ROLE_MAP = {"user": "user", "assistant": "model", "model": "model", "bot": "model"}


@dataclass(slots=True)
class ChatReply:
    message: str
    model: str
    image_generation: GenerationResult | None = None


def extract_generate_marker(text: str) -> tuple[str, str | None]:
    """Split a reply into its visible text and the requested image prompt, if any."""
    match = GENERATE_MARKER_RE.search(text or "")
    if not match:
        return (text or "").strip(), None
    visible = GENERATE_MARKER_RE.sub("", text).strip()
    return visible, match.group("prompt").strip()


def _history_contents(history: list[dict[str, Any]]) -> list[dict[str, Any]]:
    contents: list[dict[str, Any]] = []
    for turn in history or []:
        if not isinstance(turn, dict):
            continue
        role = ROLE_MAP.get(str(turn.get("role", "user")).lower())
        text = turn.get("content") or turn.get("text") or turn.get("message")
        if role is None or not isinstance(text, str) or not text.strip():
            continue
        contents.append({"role": role, "parts": [{"text": text}]})
    return contents


class ChatAgent:
    """Gemini text model wrapper with an optional image-generation side effect."""

    label = "GEMINI"

    def __init__(
        self,
        dispatcher: Dispatcher,
        api_key: str | None,
        model: str = "gemini-2.5-flash",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.transport = transport

    async def reply(
        self,
        message: str,
        history: list[dict[str, Any]] | None = None,
        image: SourceImage | None = None,
        style_id: str | None = None,
    ) -> ChatReply:
        text = await self._complete(message, history or [], image)
        visible, image_prompt = extract_generate_marker(text)

        generation = None
        if image_prompt:
            logger.info("Chat requested an image: %s", image_prompt)
            generation = await self.dispatcher.generate_with_style(image_prompt, style_id, image)
        return ChatReply(message=visible, model=self.model, image_generation=generation)

    async def _complete(self, message: str, history: list[dict[str, Any]], image: SourceImage | None) -> str:
        if not self.api_key:
            raise ProviderError(self.label, "API key not found in GEMINI_API_KEY", retryable=False)

        parts: list[dict[str, Any]] = [{"text": message}]
        if image is not None:
            parts.append({"inlineData": {"mimeType": image.mime_type, "data": image.to_base64()}})
        contents = _history_contents(history)
        contents.append({"role": "user", "parts": parts})

        try:
            async with open_client(self.timeout, self.transport) as client:
                response = await client.post(
                    f"{GOOGLE_API_BASE}/{self.model}:generateContent",
                    params={"key": self.api_key},
                    headers={"Content-Type": "application/json"},
                    json={
                        "systemInstruction": {"parts": [{"text": CHAT_SYSTEM_PROMPT}]},
                        "contents": contents,
                    },
                )
        except httpx.TimeoutException as exc:
            raise ProviderError(self.label, f"timed out after {self.timeout:.0f}s.") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(self.label, f"network error ({exc.__class__.__name__}).") from exc

        if response.status_code >= 400:
            raise safe_provider_error(self.label, response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(self.label, "returned a non-JSON response.") from exc
        text_parts = [
            part.get("text", "")
            for candidate in (payload.get("candidates") or [])
            for part in (((candidate.get("content") or {}).get("parts")) or [])
            if part.get("text")
        ]
        full_text = "\n".join(text_parts).strip()
        if not full_text:
            raise ProviderError(self.label, "returned no chat text.")
        return full_text
