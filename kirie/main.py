import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field

from kirie.chat import ChatAgent
from kirie.dispatcher import Dispatcher, GenerationResult
from kirie.errors import KirieError, ValidationError
from kirie.logs import setup_logging
from kirie.providers import SourceImage, build_providers
from kirie.settings import Settings, load_settings
from kirie.styles import StyleRegistry

VERSION = "1.0.0"

CONVERT_PROMPT = (
    "Beautiful scene transformed into intricate paper cutting art, preserving the original composition and mood"
)
CONVERT_NOTE = "AI-powered paper-cut style transformation"

STATIC_DIR = Path(__file__).resolve().parent.parent / "static"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}

logger = logging.getLogger("kirie.api")


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str | None = None
    style: str | None = None
    image_data: str | None = Field(default=None, alias="imageData")
    mime_type: str | None = Field(default=None, alias="mimeType")


class ConvertRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_data: str | None = Field(default=None, alias="imageData")
    style: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str | None = None
    history: list[dict[str, Any]] = Field(default_factory=list)
    image: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")
    style: str | None = None


def _envelope(result: GenerationResult) -> dict[str, Any]:
    return {
        "success": True,
        "imageUrl": result.image_url,
        "style": result.style.id,
        "styleName": result.style.display_name,
        "model": result.reported_model,
        "usedFallback": result.used_fallback,
        "attempts": result.attempt_count,
    }


def _read_source_image(payload: str | None, mime_type: str | None, settings: Settings) -> SourceImage | None:
    if not payload or not payload.strip():
        return None
    return SourceImage.from_payload(payload, mime_type=mime_type, max_bytes=settings.max_image_bytes)


def create_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Wire the style registry, adapters, dispatcher and chat agent into an app."""
    settings = settings or load_settings()

    registry = StyleRegistry()
    if settings.styles_file is not None:
        registry.load_from_file(settings.styles_file)
    providers = build_providers(settings, transport=transport)
    dispatcher = Dispatcher.from_settings(settings, registry, providers, transport=transport)
    chat_agent = ChatAgent(
        dispatcher,
        api_key=settings.gemini_api_key,
        model=settings.gemini_chat_model,
        timeout=settings.provider_timeout,
        transport=transport,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        setup_logging(settings)
        logger.info(
            "Kirie Studio %s ready: %d styles, providers=%s",
            VERSION,
            len(registry.list_styles()),
            ", ".join(providers),
        )
        yield

    app = FastAPI(title="Kirie Studio", version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.chat_agent = chat_agent

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    # Registered after CORSMiddleware so it runs first: every OPTIONS gets an empty 200.
    @app.middleware("http")
    async def answer_options(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        return await call_next(request)

    @app.exception_handler(KirieError)
    async def handle_kirie_error(_: Request, exc: KirieError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc)
        else:
            logger.info("Rejected request: %s", exc)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request body.") if errors else "Invalid request body."
        return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid request body: {detail}"})

    # Served by ServerErrorMiddleware, outside CORSMiddleware.
    @app.exception_handler(Exception)
    async def handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error"},
            headers={"Access-Control-Allow-Origin": "*"},
        )

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": VERSION,
            "aiProviders": list(providers),
            "styles": [
                {"id": style.id, "name": style.display_name, "ai": style.provider}
                for style in registry.list_styles()
            ],
        }

    @app.get("/api/providers")
    async def get_providers() -> dict[str, Any]:
        return {
            "providers": {
                provider_id: {
                    "label": provider.label,
                    "requiresKey": provider.requires_key,
                    "hasKey": provider.has_key(),
                    "acceptsImage": provider.accepts_source_image,
                }
                for provider_id, provider in providers.items()
            }
        }

    @app.post("/api/generate")
    async def generate(payload: GenerateRequest) -> dict[str, Any]:
        prompt = (payload.prompt or "").strip()
        if not prompt:
            raise ValidationError("Prompt is required.")
        source_image = _read_source_image(payload.image_data, payload.mime_type, settings)

        logger.info('[Generate] prompt="%s" style=%s', prompt, payload.style)
        result = await dispatcher.generate_with_style(prompt, payload.style, source_image)
        logger.info("[Generate] %s served by %s in %d attempts", result.style.id, result.reported_model, result.attempt_count)
        return {**_envelope(result), "prompt": prompt}

    @app.post("/api/convert")
    async def convert(payload: ConvertRequest) -> dict[str, Any]:
        source_image = _read_source_image(payload.image_data, payload.mime_type, settings)
        if source_image is None:
            raise ValidationError("Image data is required.")

        logger.info("[Convert] style=%s mime=%s bytes=%d", payload.style, source_image.mime_type, len(source_image.data))
        result = await dispatcher.generate_with_style(CONVERT_PROMPT, payload.style, source_image)
        logger.info("[Convert] served by %s", result.reported_model)
        return {**_envelope(result), "note": CONVERT_NOTE}

    @app.post("/api/chat")
    async def chat(payload: ChatRequest) -> dict[str, Any]:
        message = (payload.message or "").strip()
        image = _read_source_image(payload.image, payload.mime_type, settings)
        if not message and image is None:
            raise ValidationError("Message is required.")

        reply = await chat_agent.reply(message or "Describe this image.", payload.history, image, payload.style)
        body: dict[str, Any] = {"success": True, "message": reply.message, "model": reply.model}
        if reply.image_generation is not None:
            body["imageGeneration"] = _envelope(reply.image_generation)
        return body

    if STATIC_DIR.is_dir():

        @app.get("/")
        async def root() -> FileResponse:
            return FileResponse(STATIC_DIR / "index.html")

        app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")

    return app


app = create_app()
