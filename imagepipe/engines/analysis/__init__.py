"""
AI Analysis Adapter - prompt construction, response parsing, Gemini provider.
"""

from imagepipe.engines.analysis.schemas import AIAnalysisResult, AnalysisContext, CropRegion
from imagepipe.engines.analysis.services import AIAnalysisService, GeminiAnalysisService

__all__ = [
    "AIAnalysisResult",
    "AnalysisContext",
    "CropRegion",
    "AIAnalysisService",
    "GeminiAnalysisService",
]
