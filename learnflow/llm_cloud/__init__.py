"""Top-level package exports for llm_cloud.

This package holds the AI Service Layer infrastructure:
    • provider.py – OpenAI-compatible client configuration
    • service.py  – deadline-aware `AIService.complete()` and its error taxonomy
"""

from .service import AIService, AIServiceError, AITimeout, AIUnavailable, AIRateLimited

__all__ = [
    "AIService",
    "AIServiceError",
    "AITimeout",
    "AIUnavailable",
    "AIRateLimited",
]
