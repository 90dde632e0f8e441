"""Interfaces of the AI translation and review capabilities the pipeline consumes."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import TokenCount


@dataclass
class TranslationRequest:
    source_text: str
    system_instruction: str
    user_prompt: str
    model: str
    temperature: Optional[float] = None


@dataclass
class TranslationResponse:
    translated_text: str
    processing_time: float = 0.0
    token_count: Optional[TokenCount] = None
    model: str = ""


@dataclass
class ReviewRequest:
    original_content: str
    translated_content: str
    source_language: str
    target_language: str
    model: str = ""
    custom_prompt: Optional[str] = None
    context_segments: List[Dict[str, str]] = field(default_factory=list)
    temperature: Optional[float] = None


@dataclass
class ReviewResponse:
    """
    Raw review result. ``issues`` and ``scores`` are plain dicts as returned by
    the provider; the review engine normalizes them.
    """
    suggested_translation: str
    issues: List[Dict[str, Any]] = field(default_factory=list)
    scores: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TranslationCapability(ABC):
    """Translates one text. Raises CapabilityError on provider failure."""

    @abstractmethod
    def translate(self, request: TranslationRequest) -> TranslationResponse:
        ...


class ReviewCapability(ABC):
    """Reviews one translation. Raises CapabilityError on provider failure."""

    @abstractmethod
    def review(self, request: ReviewRequest) -> ReviewResponse:
        ...
