import json

import httpx
import pytest

from imagepipe.core.exceptions import (
    AIAnalysisError,
    CircuitBreaker,
    CircuitState,
    PromptGenerationError,
)
from imagepipe.engines.analysis.schemas import AnalysisContext
from imagepipe.engines.analysis.services import (
    GeminiAnalysisService,
    build_analysis_prompt,
    build_prompt_generation_prompt,
    detect_mime_type,
    parse_analysis_result,
)
from imagepipe.modules.imagery.schemas import BrandContext, ProductContext
from tests.conftest import make_image_bytes


def _gemini_body(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _service(handler, circuit=None) -> GeminiAnalysisService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiAnalysisService(api_key="test-key", client=client, circuit=circuit)


@pytest.mark.asyncio
async def test_analyze_falls_back_on_fenced_invalid_json():
    service = _service(lambda request: httpx.Response(200, json=_gemini_body("```json\n{not valid json\n```")))

    result = await service.analyze(make_image_bytes(), AnalysisContext())

    assert result.quality_score == 50
    assert result.detected_objects == []
    assert len(result.issues) == 1
    assert result.issues[0].severity == "low"


@pytest.mark.asyncio
async def test_analyze_parses_camel_case_response():
    payload = {
        "detectedObjects": ["sneaker"],
        "suggestedCrop": {"x": 10, "y": 5, "width": 80, "height": 90},
        "qualityScore": 88,
        "dominantColors": ["#ffffff"],
        "tags": ["footwear"],
        "description": "A white sneaker",
        "issues": [],
    }
    service = _service(lambda request: httpx.Response(200, json=_gemini_body(f"```json\n{json.dumps(payload)}\n```")))

    result = await service.analyze(make_image_bytes(), AnalysisContext())

    assert result.detected_objects == ["sneaker"]
    assert result.quality_score == 88
    assert result.suggested_crop.width == 80
    assert result.description == "A white sneaker"


@pytest.mark.asyncio
async def test_analyze_sends_inline_image_and_key():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = request.url
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json=_gemini_body("{}"))

    service = _service(handler)
    await service.analyze(make_image_bytes(fmt="PNG"), AnalysisContext())

    assert captured["url"].path.endswith("/models/gemini-1.5-pro:generateContent")
    assert captured["url"].params["key"] == "test-key"
    parts = captured["body"]["contents"][0]["parts"]
    assert parts[1]["inline_data"]["mime_type"] == "image/png"
    assert captured["body"]["generationConfig"]["topK"] == 40


@pytest.mark.asyncio
async def test_analyze_http_error_is_recoverable():
    service = _service(lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(AIAnalysisError) as exc_info:
        await service.analyze(make_image_bytes(), AnalysisContext())

    assert exc_info.value.recoverable is True
    assert exc_info.value.details["http_status"] == 500


@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_failures():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    service = _service(handler, circuit=CircuitBreaker("test", failure_threshold=2, recovery_timeout=60))

    for _ in range(2):
        with pytest.raises(AIAnalysisError):
            await service.analyze(make_image_bytes(), AnalysisContext())

    with pytest.raises(AIAnalysisError) as exc_info:
        await service.analyze(make_image_bytes(), AnalysisContext())

    assert "circuit breaker open" in exc_info.value.message
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_generate_prompt_returns_stripped_text():
    service = _service(lambda request: httpx.Response(200, json=_gemini_body("  Square studio shot.\n")))

    prompt = await service.generate_prompt(make_image_bytes(), AnalysisContext())

    assert prompt == "Square studio shot."


@pytest.mark.asyncio
async def test_generate_prompt_wraps_provider_errors():
    service = _service(lambda request: httpx.Response(500))

    with pytest.raises(PromptGenerationError):
        await service.generate_prompt(make_image_bytes(), AnalysisContext())


@pytest.mark.asyncio
async def test_is_available_checks_model_endpoint():
    service = _service(lambda request: httpx.Response(200, json={"name": "models/gemini-1.5-pro"}))

    assert await service.is_available() is True


def test_analysis_prompt_includes_context():
    context = AnalysisContext(
        brand=BrandContext(name="Acme", vertical="fashion", tone="premium"),
        product=ProductContext(id="SKU-1", category="shoes", attributes=["leather", "black"]),
    )

    prompt = build_analysis_prompt(context)

    assert "- Brand: Acme" in prompt
    assert "- Vertical: fashion" in prompt
    assert "- Attributes: leather, black" in prompt
    assert '"suggestedCrop"' in prompt


def test_prompt_generation_defaults_to_pure_white_background():
    prompt = build_prompt_generation_prompt(AnalysisContext(brand=BrandContext(tone="premium")))

    assert "Brand tone: premium" in prompt
    assert "Background preference: pure-white" in prompt
    assert "1:1" in prompt


def test_parse_non_object_json_falls_back():
    result = parse_analysis_result("[1, 2, 3]")

    assert result.quality_score == 50
    assert result.issues[0].message == "Could not parse AI analysis response"


def test_parse_keeps_analysis_when_crop_is_unusable():
    text = json.dumps({
        "tags": ["footwear"],
        "qualityScore": 101,
        "suggestedCrop": {"x": 0, "y": 0, "width": 0, "height": 50},
        "issues": [{"type": "lighting", "severity": "medium", "message": "Harsh shadow"}],
    })

    result = parse_analysis_result(text)

    assert result.suggested_crop is None
    assert result.quality_score == 100
    assert result.tags == ["footwear"]
    assert result.issues[0].message == "Harsh shadow"


@pytest.mark.parametrize("buffer,expected", [
    (make_image_bytes(fmt="PNG"), "image/png"),
    (make_image_bytes(fmt="JPEG"), "image/jpeg"),
    (make_image_bytes(fmt="WEBP"), "image/webp"),
    (b"plain text", "application/octet-stream"),
])
def test_detect_mime_type(buffer, expected):
    assert detect_mime_type(buffer) == expected


def test_circuit_allows_single_trial_after_recovery_timeout():
    now = [0.0]
    circuit = CircuitBreaker("test", failure_threshold=1, recovery_timeout=30, clock=lambda: now[0])

    circuit.record_failure(RuntimeError("down"))
    assert circuit.can_execute() is False

    now[0] = 31.0
    assert circuit.state is CircuitState.HALF_OPEN
    assert circuit.can_execute() is True
    assert circuit.can_execute() is False

    circuit.record_success()
    assert circuit.state is CircuitState.CLOSED
    assert circuit.can_execute() is True


def test_failed_trial_reopens_circuit():
    now = [0.0]
    circuit = CircuitBreaker("test", failure_threshold=3, recovery_timeout=30, clock=lambda: now[0])
    for _ in range(3):
        circuit.record_failure()

    now[0] = 30.0
    assert circuit.can_execute() is True
    circuit.record_failure()

    assert circuit.state is CircuitState.OPEN
    assert circuit.can_execute() is False
