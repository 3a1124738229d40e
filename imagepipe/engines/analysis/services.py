"""
AI Analysis Adapter

AIAnalysisService is the contract the pipeline consumes. Prompt building
and response parsing live here as plain functions so every provider shares
them; GeminiAnalysisService talks to the Gemini REST API over httpx.
"""

import re
import json
import base64
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from imagepipe.core.exceptions import (
    DomainError,
    AIAnalysisError,
    PromptGenerationError,
    CircuitBreaker,
)
from imagepipe.core.logging import get_logger
from imagepipe.core.metrics import record_ai_call
from imagepipe.engines.analysis.schemas import (
    AIAnalysisResult,
    AnalysisContext,
    AnalysisIssue,
)

logger = get_logger(__name__)

CODE_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)

MIME_SIGNATURES = [
    ("image/jpeg", b"\xff\xd8\xff"),
    ("image/png", b"\x89PNG"),
    ("image/gif", b"GIF8"),
    ("image/tiff", b"II*\x00"),
    ("image/tiff", b"MM\x00*"),
]


# =============================================================================
# Contract
# =============================================================================

class AIAnalysisService(ABC):
    """Interface for AI image analysis providers."""

    @abstractmethod
    async def analyze(self, image: bytes, context: AnalysisContext) -> AIAnalysisResult:
        """
        Analyze a product image.

        Raises:
            AIAnalysisError: provider or transport failure (recoverable)
        """
        pass

    @abstractmethod
    async def generate_prompt(self, image: bytes, context: AnalysisContext) -> str:
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        pass

    async def close(self):
        pass


# =============================================================================
# Prompt Construction
# =============================================================================

def _context_lines(context: AnalysisContext) -> List[str]:
    lines = []
    if context.brand:
        brand = context.brand
        lines.append(f"- Brand: {brand.name or 'unknown'}")
        lines.append(f"- Vertical: {brand.vertical.value if brand.vertical else 'unknown'}")
        lines.append(f"- Tone: {brand.tone.value if brand.tone else 'unknown'}")
    if context.product:
        product = context.product
        lines.append(f"- Product ID: {product.id or 'unknown'}")
        lines.append(f"- Category: {product.category or 'unknown'}")
        if product.attributes:
            lines.append(f"- Attributes: {', '.join(product.attributes)}")
    return lines


def build_analysis_prompt(context: AnalysisContext) -> str:
    parts = [
        "Analyze this product image for ecommerce optimization.",
        "",
    ]

    context_lines = _context_lines(context)
    if context_lines:
        parts.append("Context:")
        parts.extend(context_lines)
        parts.append("")

    parts.extend([
        "Provide analysis in JSON format with the following structure:",
        "{",
        '  "detectedObjects": ["object1", "object2"],',
        '  "suggestedCrop": { "x": 0, "y": 0, "width": 100, "height": 100 },',
        '  "qualityScore": 85,',
        '  "dominantColors": ["#color1", "#color2"],',
        '  "tags": ["tag1", "tag2"],',
        '  "description": "brief description",',
        '  "issues": [',
        '    { "type": "issueType", "severity": "low", "message": "description", "suggestion": "fix" }',
        "  ]",
        "}",
        "",
        "suggestedCrop values are percentages (0-100) of the image width and height.",
    ])
    return "\n".join(parts)


def build_prompt_generation_prompt(context: AnalysisContext) -> str:
    parts = [
        "Generate an enterprise ecommerce prompt for this product image.",
        "",
        "The prompt should follow these constraints:",
        "- Aspect ratio: 1:1 (square)",
        "- Professional ecommerce standard",
        "- Preserve product integrity",
        "- No creative changes to the product",
        "- Describe product, material, lighting, and composition",
        "",
    ]

    if context.brand:
        tone = context.brand.tone.value if context.brand.tone else "neutral"
        parts.append(f"Brand tone: {tone}")
        parts.append(f"Background preference: {context.brand.background or 'pure-white'}")

    parts.append("")
    parts.append("Return ONLY the prompt text, no JSON.")
    return "\n".join(parts)


# =============================================================================
# Response Parsing
# =============================================================================

def fallback_analysis_result() -> AIAnalysisResult:
    """Degraded result used when the provider response cannot be parsed."""
    return AIAnalysisResult(
        detected_objects=[],
        quality_score=50,
        issues=[
            AnalysisIssue(
                type="composition",
                severity="low",
                message="Could not parse AI analysis response",
                suggestion="Manual review recommended",
            )
        ],
    )


def parse_analysis_result(text: str) -> AIAnalysisResult:
    """Strip code fences and parse the provider JSON. Never raises."""
    cleaned = CODE_FENCE_PATTERN.sub("", text or "").strip()
    try:
        parsed = json.loads(cleaned)
        if not isinstance(parsed, dict):
            raise ValueError("analysis response is not a JSON object")
        return AIAnalysisResult.model_validate(parsed)
    except (ValueError, ValidationError) as e:
        logger.warning(
            "ai_analysis_parse_failed",
            error=str(e),
            response_preview=cleaned[:200]
        )
        return fallback_analysis_result()


def detect_mime_type(buffer: bytes) -> str:
    """Sniff the image type from its magic bytes."""
    if buffer[:4] == b"RIFF" and buffer[8:12] == b"WEBP":
        return "image/webp"
    for mime_type, signature in MIME_SIGNATURES:
        if buffer.startswith(signature):
            return mime_type
    return "application/octet-stream"


# =============================================================================
# Gemini Provider
# =============================================================================

class GeminiAnalysisService(AIAnalysisService):
    """Gemini vision model over the generateContent REST endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-1.5-pro",
        api_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 60.0,
        max_output_tokens: int = 2048,
        temperature: float = 0.1,
        top_p: float = 0.8,
        top_k: int = 40,
        client: Optional[httpx.AsyncClient] = None,
        circuit: Optional[CircuitBreaker] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.api_url = api_url.rstrip("/")
        self.generation_config = {
            "maxOutputTokens": max_output_tokens,
            "temperature": temperature,
            "topP": top_p,
            "topK": top_k,
        }
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._circuit = circuit or CircuitBreaker("gemini", failure_threshold=3, recovery_timeout=120)

    @property
    def _model_url(self) -> str:
        return f"{self.api_url}/models/{self.model}"

    def _build_payload(self, prompt: str, image: bytes) -> Dict[str, Any]:
        return {
            "contents": [{
                "parts": [
                    {"text": prompt},
                    {
                        "inline_data": {
                            "mime_type": detect_mime_type(image),
                            "data": base64.b64encode(image).decode("utf-8"),
                        }
                    },
                ]
            }],
            "generationConfig": self.generation_config,
        }

    async def _generate(self, prompt: str, image: bytes, operation: str) -> str:
        if not self._circuit.can_execute():
            raise AIAnalysisError(
                "AI analysis provider is temporarily unavailable (circuit breaker open)",
                details={"service": "gemini", "operation": operation}
            )

        try:
            response = await self._client.post(
                f"{self._model_url}:generateContent",
                params={"key": self.api_key},
                json=self._build_payload(prompt, image),
            )
            if response.status_code != 200:
                raise AIAnalysisError(
                    f"Gemini API error: HTTP {response.status_code}",
                    details={
                        "service": "gemini",
                        "operation": operation,
                        "http_status": response.status_code,
                        "body": response.text[:500],
                    }
                )

            body = response.json()
            parts = body["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)

        except AIAnalysisError as e:
            self._circuit.record_failure(e)
            record_ai_call(operation, "error")
            raise
        except httpx.TimeoutException as e:
            self._circuit.record_failure(e)
            record_ai_call(operation, "timeout")
            raise AIAnalysisError(
                "Gemini API timeout",
                details={"service": "gemini", "operation": operation}
            ) from e
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            self._circuit.record_failure(e)
            record_ai_call(operation, "error")
            raise AIAnalysisError(
                f"Gemini API call failed: {e}",
                details={"service": "gemini", "operation": operation, "error_type": type(e).__name__}
            ) from e

        self._circuit.record_success()
        record_ai_call(operation, "success")
        return text

    async def analyze(self, image: bytes, context: AnalysisContext) -> AIAnalysisResult:
        text = await self._generate(build_analysis_prompt(context), image, "analyze")
        result = parse_analysis_result(text)
        logger.info(
            "ai_analysis_completed",
            quality_score=result.quality_score,
            detected_objects=len(result.detected_objects),
            has_crop=result.suggested_crop is not None,
        )
        return result

    async def generate_prompt(self, image: bytes, context: AnalysisContext) -> str:
        try:
            text = await self._generate(build_prompt_generation_prompt(context), image, "generate_prompt")
        except DomainError as e:
            raise PromptGenerationError(
                f"Prompt generation failed: {e.message}",
                details=e.details
            ) from e
        return text.strip()

    async def is_available(self) -> bool:
        if not self.api_key:
            return False
        try:
            response = await self._client.get(self._model_url, params={"key": self.api_key})
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("ai_availability_check_failed", error=str(e))
            return False

    async def close(self):
        await self._client.aclose()
