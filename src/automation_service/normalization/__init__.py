"""Text-generation backed normalization."""

from automation_service.normalization.adapter import NormalizationAdapter
from automation_service.normalization.llm import (
    OpenAIChatCompletionsGenerator,
    TextGenerator,
    build_text_generator,
)

__all__ = [
    "NormalizationAdapter",
    "OpenAIChatCompletionsGenerator",
    "TextGenerator",
    "build_text_generator",
]
