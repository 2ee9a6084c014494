"""HTTP endpoint tests."""

from __future__ import annotations

import base64
import json
from typing import Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from kirie.main import create_app
from kirie.settings import Settings

IMAGE_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 256
IMAGE_B64 = base64.b64encode(IMAGE_BYTES).decode("utf-8")


def make_client(handler: Callable[[httpx.Request], httpx.Response] | None = None, **overrides) -> TestClient:
    overrides.setdefault("retry_backoff", 0.0)
    settings = Settings(**overrides)
    transport = httpx.MockTransport(handler) if handler else None
    return TestClient(create_app(settings, transport=transport))


def gemini_image_handler(request: httpx.Request) -> httpx.Response:
    body = {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": IMAGE_B64}}]}}]}
    return httpx.Response(200, json=body)


def test_generate_traditional_scenario():
    client = make_client()

    response = client.post("/api/generate", json={"prompt": "a red apple", "style": "traditional"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["imageUrl"]
    assert body["styleName"] == "伝統切り絵"
    assert body["style"] == "traditional"
    assert body["prompt"] == "a red apple"


def test_generate_reports_substituted_provider():
    client = make_client()

    body = client.post("/api/generate", json={"prompt": "a red apple", "style": "traditional"}).json()

    assert body["model"] == "TURBO (Fallback)"
    assert body["usedFallback"] is True
    assert "model=turbo" in body["imageUrl"]


def test_generate_without_substitution_reports_requested_provider():
    client = make_client(substitutions={})

    body = client.post("/api/generate", json={"prompt": "a red apple", "style": "traditional"}).json()

    assert body["model"] == "NANOBANANA"
    assert body["usedFallback"] is False


@pytest.mark.parametrize("payload", [{"prompt": ""}, {"prompt": "   \n"}, {"style": "zen"}, {"prompt": None}])
def test_generate_rejects_empty_prompt(payload):
    client = make_client()

    response = client.post("/api/generate", json=payload)

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"]


def test_malformed_json_is_a_validation_error():
    client = make_client()

    response = client.post("/api/generate", content=b"{not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_generate_unknown_style_uses_baseline():
    client = make_client()

    body = client.post("/api/generate", json={"prompt": "koi", "style": "vaporwave"}).json()

    assert body["style"] == "traditional"
    assert body["styleName"] == "伝統切り絵"


def test_convert_without_style_uses_default():
    client = make_client()

    response = client.post("/api/convert", json={"imageData": IMAGE_B64})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["style"] == "traditional"
    assert body["imageUrl"]
    assert body["note"]
    assert "preserving%20the%20original%20composition" in body["imageUrl"]


def test_convert_forwards_source_image_to_gemini():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["parts"] = json.loads(request.content)["contents"][0]["parts"]
        return gemini_image_handler(request)

    client = make_client(handler, gemini_api_key="test-key")

    body = client.post(
        "/api/convert", json={"imageData": f"data:image/jpeg;base64,{IMAGE_B64}", "style": "ultimate_kirie"}
    ).json()

    assert body["model"] == "GEMINI"
    assert body["imageUrl"].startswith("data:image/png;base64,")
    assert seen["parts"][1]["inlineData"]["mimeType"] == "image/jpeg"


@pytest.mark.parametrize("payload", [{}, {"imageData": ""}, {"imageData": "%%%not-base64%%%"}])
def test_convert_rejects_missing_or_bad_image(payload):
    client = make_client()

    response = client.post("/api/convert", json=payload)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error"]


def test_oversized_image_is_rejected():
    client = make_client(max_image_bytes=64)

    response = client.post("/api/convert", json={"imageData": IMAGE_B64})

    assert response.status_code == 400
    assert "too large" in response.json()["error"]


def test_gemini_style_without_key_falls_back_to_baseline_provider():
    client = make_client()

    body = client.post("/api/generate", json={"prompt": "crane", "style": "ultimate_kirie"}).json()

    assert body["success"] is True
    assert body["model"] == "FLUX (Fallback)"
    assert body["styleName"] == "究極切り絵"


def test_gemini_style_with_key_returns_inline_image():
    client = make_client(gemini_image_handler, gemini_api_key="test-key")

    body = client.post("/api/generate", json={"prompt": "crane", "style": "ultimate_kirie"}).json()

    assert body["model"] == "GEMINI"
    assert body["usedFallback"] is False
    assert body["imageUrl"] == f"data:image/png;base64,{IMAGE_B64}"


def test_exhausted_chain_returns_500_envelope():
    client = make_client(fallback_chain=())

    response = client.post("/api/generate", json={"prompt": "crane", "style": "ultimate_kirie"})

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert "GEMINI_API_KEY" in body["error"]
    assert "Traceback" not in body["error"]


def test_inline_images_returns_data_uri():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "image.pollinations.ai"
        return httpx.Response(200, content=IMAGE_BYTES, headers={"content-type": "image/png"})

    client = make_client(handler, inline_images=True)

    body = client.post("/api/generate", json={"prompt": "a red apple", "style": "shadow"}).json()

    assert body["imageUrl"].startswith("data:image/png;base64,")
    assert body["model"] == "FLUX"


@pytest.mark.parametrize("path", ["/api/generate", "/api/convert", "/api/health", "/api/chat", "/anything"])
def test_options_returns_empty_cors_response(path):
    client = make_client()

    response = client.options(path)

    assert response.status_code == 200
    assert response.content == b""
    assert response.headers["access-control-allow-origin"] == "*"


def test_browser_preflight_is_answered_the_same_way():
    client = make_client()

    response = client.options(
        "/api/generate",
        headers={"Origin": "https://kirie.example", "Access-Control-Request-Method": "POST"},
    )

    assert response.status_code == 200
    assert response.content == b""
    assert response.headers["access-control-allow-origin"] == "*"


def test_health_lists_styles_and_providers():
    client = make_client()

    body = client.get("/api/health").json()

    assert body["status"] == "ok"
    assert "flux" in body["aiProviders"]
    traditional = next(style for style in body["styles"] if style["id"] == "traditional")
    assert traditional == {"id": "traditional", "name": "伝統切り絵", "ai": "nanobanana"}


def test_providers_report_key_presence():
    client = make_client(replicate_api_token="r8")

    providers = client.get("/api/providers").json()["providers"]

    assert providers["gemini"]["hasKey"] is False
    assert providers["replicate"]["hasKey"] is True
    assert providers["flux"]["requiresKey"] is None
    assert providers["gemini"]["acceptsImage"] is True


def chat_handler(reply_text: str) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        body = {"candidates": [{"content": {"parts": [{"text": reply_text}]}}]}
        return httpx.Response(200, json=body)

    return handler


def test_chat_triggers_image_generation():
    client = make_client(chat_handler("Here you go! [GENERATE: a red apple on a branch]"), gemini_api_key="k")

    response = client.post(
        "/api/chat",
        json={"message": "Make me an apple", "history": [{"role": "assistant", "content": "Hello!"}]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Here you go!"
    assert body["model"] == "gemini-2.5-flash"
    assert body["imageGeneration"]["imageUrl"]
    assert body["imageGeneration"]["styleName"] == "伝統切り絵"


def test_chat_without_marker_has_no_image():
    client = make_client(chat_handler("Paper cutting began in China."), gemini_api_key="k")

    body = client.post("/api/chat", json={"message": "Where does kirie come from?"}).json()

    assert body["message"] == "Paper cutting began in China."
    assert "imageGeneration" not in body


def test_chat_requires_message():
    client = make_client(gemini_api_key="k")

    response = client.post("/api/chat", json={"message": "  ", "history": []})

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_chat_without_key_is_a_500_envelope():
    client = make_client()

    response = client.post("/api/chat", json={"message": "hello"})

    assert response.status_code == 500
    assert response.json()["success"] is False


def test_lifespan_configures_logging(tmp_path):
    app = create_app(Settings(log_file=tmp_path / "logs" / "kirie.log"))

    with TestClient(app) as client:
        assert client.get("/api/health").status_code == 200

    assert (tmp_path / "logs" / "kirie.log").exists()


def test_styles_file_template_with_extra_braces(tmp_path):
    path = tmp_path / "styles.json"
    path.write_text(json.dumps([{"id": "ink", "ai": "flux", "prompt": "Ink {text} in {color}"}]), encoding="utf-8")
    client = make_client(styles_file=path)

    response = client.post("/api/generate", json={"prompt": "koi", "style": "ink"})

    assert response.status_code == 200
    assert response.json()["model"] == "FLUX"
    assert "%7Bcolor%7D" in response.json()["imageUrl"]


def test_unexpected_error_keeps_envelope_and_cors_header():
    def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("transport exploded")

    app = create_app(Settings(gemini_api_key="k", retry_backoff=0.0), transport=httpx.MockTransport(handler))
    client = TestClient(app, raise_server_exceptions=False)

    response = client.post(
        "/api/generate",
        json={"prompt": "crane", "style": "ultimate_kirie"},
        headers={"Origin": "https://kirie.example"},
    )

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Internal server error"}
    assert response.headers["access-control-allow-origin"] == "*"
