"""Client-side controller: UI state, generation history and i18n strings.

``StudioState`` is the single owner of what the browser build keeps in
module globals and localStorage: the active language, the image currently on
display and the history ring buffer. It is persisted only after a successful
generation, after a language switch and after an explicit clear.
``StudioClient`` talks to the HTTP API and applies the results to the state.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import json
import logging
import sys
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import httpx

from kirie.errors import KirieError
from kirie.providers import DATA_URL_RE, SourceImage

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50
DEFAULT_STATE_PATH = Path.home() / ".kirie" / "studio.json"

I18N: dict[str, dict[str, str]] = {
    "ja": {
        "title": "AI切り絵スタジオ",
        "subtitle": "AIで切り絵アートを生成",
        "generating": "生成中...",
        "converting": "変換中...",
        "uploadTab": "画像変換",
        "history": "履歴",
        "noHistory": "履歴なし",
        "historyCleared": "履歴を削除しました",
        "errorPrompt": "プロンプトを入力してください",
        "errorImage": "画像を選択してください",
        "errorGen": "生成に失敗しました",
        "saved": "保存しました",
    },
    "en": {
        "title": "AI Kirie Studio",
        "subtitle": "Create Paper-Cut Art with AI",
        "generating": "Generating...",
        "converting": "Converting...",
        "uploadTab": "Convert Image",
        "history": "History",
        "noHistory": "No history",
        "historyCleared": "History cleared",
        "errorPrompt": "Please enter a prompt",
        "errorImage": "Please select an image",
        "errorGen": "Generation failed",
        "saved": "Saved",
    },
}


@dataclass(slots=True)
class HistoryEntry:
    image_url: str
    prompt: str
    style: str
    timestamp: float


@dataclass(slots=True)
class StudioOutcome:
    ok: bool
    message: str
    image_url: str | None = None
    model: str | None = None


@dataclass
class StudioState:
    """Application state with controlled mutation and explicit checkpoints."""

    path: Path | None = None
    lang: str = "ja"
    current_image_url: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)
    limit: int = HISTORY_LIMIT

    @classmethod
    def load(cls, path: Path, limit: int = HISTORY_LIMIT) -> "StudioState":
        state = cls(path=path, limit=limit)
        if not path.exists():
            return state
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable studio state %s: %s", path, exc)
            return state
        if not isinstance(data, dict) or not isinstance(data.get("history", []), list):
            logger.warning("Ignoring studio state %s with an unexpected layout", path)
            return state
        if isinstance(data.get("lang"), str) and data["lang"] in I18N:
            state.lang = data["lang"]
        for item in data.get("history", [])[:limit]:
            try:
                state.history.append(
                    HistoryEntry(
                        image_url=item["image_url"],
                        prompt=item.get("prompt", ""),
                        style=item.get("style", ""),
                        timestamp=float(item.get("timestamp", 0)),
                    )
                )
            except (AttributeError, KeyError, TypeError, ValueError):
                continue
        return state

    def text(self, key: str) -> str:
        return I18N.get(self.lang, I18N["en"]).get(key, key)

    def set_language(self, lang: str) -> None:
        if lang not in I18N:
            raise ValueError(f"Unsupported language: {lang}")
        self.lang = lang
        self._save()

    def record(self, image_url: str, prompt: str, style: str) -> HistoryEntry:
        """Show a freshly generated image and push it to the front of history."""
        entry = HistoryEntry(image_url=image_url, prompt=prompt, style=style, timestamp=time.time())
        self.current_image_url = image_url
        self.history.insert(0, entry)
        del self.history[self.limit:]
        self._save()
        return entry

    def show(self, index: int) -> HistoryEntry | None:
        if 0 <= index < len(self.history):
            entry = self.history[index]
            self.current_image_url = entry.image_url
            return entry
        return None

    def clear(self) -> None:
        self.history.clear()
        self.current_image_url = None
        self._save()

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"lang": self.lang, "history": [asdict(entry) for entry in self.history]}
        self.path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")


class StudioClient:
    """Calls the Kirie Studio API and applies the outcome to a StudioState."""

    def __init__(
        self,
        state: StudioState,
        base_url: str = "http://localhost:8000",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.state = state
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def generate(self, prompt: str, style: str = "traditional") -> StudioOutcome:
        prompt = prompt.strip()
        if not prompt:
            return StudioOutcome(ok=False, message=self.state.text("errorPrompt"))
        outcome = await self._post("/api/generate", {"prompt": prompt, "style": style})
        if outcome.ok and outcome.image_url:
            self.state.record(outcome.image_url, prompt, style)
        return outcome

    async def convert(self, image_path: Path, style: str | None = None) -> StudioOutcome:
        if not image_path.is_file():
            return StudioOutcome(ok=False, message=self.state.text("errorImage"))
        mime = _guess_mime(image_path)
        data_url = f"data:{mime};base64,{base64.b64encode(image_path.read_bytes()).decode('utf-8')}"
        body: dict[str, Any] = {"imageData": data_url}
        if style:
            body["style"] = style
        outcome = await self._post("/api/convert", body)
        if outcome.ok and outcome.image_url:
            self.state.record(outcome.image_url, self.state.text("uploadTab"), style or "convert")
        return outcome

    async def download(self, dest_dir: Path) -> Path:
        """Write the image on display to ``dest_dir`` and return its path."""
        image_url = self.state.current_image_url
        if not image_url:
            raise ValueError("No image to download.")
        match = DATA_URL_RE.match(image_url)
        if match:
            image = SourceImage.from_payload(image_url)
            content, mime = image.data, image.mime_type
        else:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(image_url, follow_redirects=True)
                response.raise_for_status()
            content = response.content
            mime = response.headers.get("content-type", "image/png").split(";")[0]
        extension = {"image/jpeg": "jpg", "image/svg+xml": "svg", "image/webp": "webp"}.get(mime, "png")
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / f"kirie-{int(time.time() * 1000)}.{extension}"
        target.write_bytes(content)
        return target

    async def _post(self, path: str, body: dict[str, Any]) -> StudioOutcome:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(path, json=body)
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Request to %s failed: %s", path, exc)
            return StudioOutcome(ok=False, message=self.state.text("errorGen"))

        if not isinstance(data, dict) or not data.get("success") or not data.get("imageUrl"):
            # Provider text stays in the log; users get the localised message.
            error = data.get("error") if isinstance(data, dict) else data
            logger.error("%s returned %s: %s", path, response.status_code, error)
            return StudioOutcome(ok=False, message=self.state.text("errorGen"))
        return StudioOutcome(ok=True, message=data.get("styleName", ""), image_url=data["imageUrl"], model=data.get("model"))


def _guess_mime(path: Path) -> str:
    return {
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".webp": "image/webp",
        ".gif": "image/gif",
    }.get(path.suffix.lower(), "image/png")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate paper-cut art through a Kirie Studio server.")
    parser.add_argument("prompt", nargs="?", default="", help="Text prompt to render.")
    parser.add_argument("--style", default="traditional", help="Style id, e.g. traditional, shadow, zen.")
    parser.add_argument("--image", type=Path, help="Convert this image instead of rendering a prompt.")
    parser.add_argument("--server", default="http://localhost:8000", help="Kirie Studio base URL.")
    parser.add_argument("--out", type=Path, default=Path("."), help="Directory for the downloaded image.")
    parser.add_argument("--lang", choices=sorted(I18N), help="Interface language.")
    parser.add_argument("--state", type=Path, default=DEFAULT_STATE_PATH, help="History file.")
    parser.add_argument("--history", action="store_true", help="List history and exit.")
    parser.add_argument("--clear-history", action="store_true", help="Clear history and exit.")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, transport: httpx.AsyncBaseTransport | None = None) -> int:
    state = StudioState.load(args.state)
    if args.lang:
        state.set_language(args.lang)

    if args.clear_history:
        state.clear()
        print(state.text("historyCleared"))
        return 0
    if args.history:
        if not state.history:
            print(state.text("noHistory"))
        for index, entry in enumerate(state.history):
            stamp = time.strftime("%Y-%m-%d %H:%M", time.localtime(entry.timestamp))
            print(f"{index:>2}  {stamp}  [{entry.style}] {entry.prompt}")
        return 0

    client = StudioClient(state, base_url=args.server, transport=transport)
    if args.image:
        print(state.text("converting"))
        outcome = await client.convert(args.image, args.style)
    else:
        print(state.text("generating"))
        outcome = await client.generate(args.prompt, args.style)

    if not outcome.ok:
        print(outcome.message, file=sys.stderr)
        return 1
    try:
        target = await client.download(args.out)
    except (httpx.HTTPError, OSError, KirieError) as exc:
        logger.error("Download of %s failed: %s", state.current_image_url, exc)
        print(state.text("errorGen"), file=sys.stderr)
        return 1
    print(f"{state.text('saved')}: {target} ({outcome.model})")
    return 0


def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    raise SystemExit(asyncio.run(run(parse_args())))


if __name__ == "__main__":
    main()
