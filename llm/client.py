import os
import time
import json
import re
from typing import Any, Optional

from openai import OpenAI, OpenAIError

from pipeline.capabilities import (
    ReviewCapability, ReviewRequest, ReviewResponse,
    TranslationCapability, TranslationRequest, TranslationResponse,
)
from pipeline.errors import CapabilityError
from pipeline.logger import get_logger
from pipeline.models import TokenCount
from llm.prompts import (
    CONTEXT_SEGMENT_TEMPLATE, REVIEW_SYSTEM_PROMPT, REVIEW_USER_PROMPT_TEMPLATE,
)

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 60.0


class LLMClient(TranslationCapability, ReviewCapability):
    """
    Translation and review capability backed by any OpenAI-compatible
    chat-completions endpoint (OpenAI, DeepSeek, Gemini, Ollama ...).
    """

    def __init__(self, api_key: str = None, base_url: str = None, model: str = "gpt-3.5-turbo",
                 provider: str = "openai", timeout: float = DEFAULT_TIMEOUT, temperature: float = 0.3):
        self.api_key = api_key or os.getenv("LLM_API_KEY")
        self.base_url = base_url or os.getenv("LLM_BASE_URL")
        self.model = model
        self.provider = provider
        self.temperature = temperature

        if self.provider == "ollama" and not self.api_key:
            # Ollama ignores the key but the SDK insists on one
            self.api_key = "ollama"

        self.client = None
        if not self.api_key:
            logger.warning(f"No API key for provider '{provider}'; calls will fail.")
        elif self.provider != "openai" and not self.base_url:
            logger.warning(f"Provider '{provider}' needs a base URL; client not initialized.")
        else:
            self.client = OpenAI(api_key=self.api_key, base_url=self.base_url, timeout=timeout)

    def _complete(self, messages, model: Optional[str], temperature: Optional[float], json_mode: bool = False):
        if not self.client:
            raise CapabilityError("Client not initialized. Check API Key.", provider=self.provider, retryable=False)

        kwargs = {
            "model": model or self.model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            return self.client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            logger.error(f"LLM call to {kwargs['model']} failed: {e}", exc_info=True)
            raise CapabilityError(f"{self.provider} request failed: {e}", provider=self.provider) from e

    def _content(self, response) -> str:
        choices = getattr(response, "choices", None)
        if not choices:
            raise CapabilityError("Provider returned no choices", provider=self.provider)
        return choices[0].message.content or ""

    @staticmethod
    def _token_count(response) -> TokenCount:
        usage = getattr(response, "usage", None)
        if usage is None:
            return TokenCount()
        return TokenCount(
            input=usage.prompt_tokens or 0,
            output=usage.completion_tokens or 0,
            total=usage.total_tokens or 0,
        )

    def translate(self, request: TranslationRequest) -> TranslationResponse:
        started = time.monotonic()
        response = self._complete(
            [
                {"role": "system", "content": request.system_instruction},
                {"role": "user", "content": request.user_prompt},
            ],
            request.model,
            request.temperature,
        )
        content = self._content(response).strip()

        # Remove any markdown code blocks if LLM added them
        if content.startswith("```"):
            lines = content.split("\n")
            content = "\n".join(lines[1:-1]) if len(lines) > 2 else content
        if not content:
            raise CapabilityError("Empty translation returned", provider=self.provider)

        return TranslationResponse(
            translated_text=content,
            processing_time=time.monotonic() - started,
            token_count=self._token_count(response),
            model=getattr(response, "model", None) or request.model or self.model,
        )

    def build_review_prompt(self, request: ReviewRequest) -> str:
        if request.custom_prompt:
            return (
                request.custom_prompt
                .replace("{SOURCE_LANGUAGE}", request.source_language)
                .replace("{TARGET_LANGUAGE}", request.target_language)
                .replace("{ORIGINAL_CONTENT}", request.original_content)
                .replace("{TRANSLATED_CONTENT}", request.translated_content)
            )

        context = ""
        if request.context_segments:
            context = "Context segments:\n" + "".join(
                CONTEXT_SEGMENT_TEMPLATE.format(
                    number=i, original=seg.get("original", ""), translation=seg.get("translation", "")
                )
                for i, seg in enumerate(request.context_segments, start=1)
            )
        return REVIEW_USER_PROMPT_TEMPLATE.format(
            source_lang=request.source_language,
            target_lang=request.target_language,
            original=request.original_content,
            translation=request.translated_content,
            context=context,
        )

    def review(self, request: ReviewRequest) -> ReviewResponse:
        started = time.monotonic()
        response = self._complete(
            [
                {"role": "system", "content": REVIEW_SYSTEM_PROMPT},
                {"role": "user", "content": self.build_review_prompt(request)},
            ],
            request.model,
            request.temperature,
            json_mode=True,
        )
        data = self._parse_json(self._content(response))
        if not isinstance(data, dict):
            raise CapabilityError("Review response is not a JSON object", provider=self.provider)

        tokens = self._token_count(response)
        return ReviewResponse(
            suggested_translation=str(data.get("suggestedTranslation") or ""),
            issues=[i for i in data.get("issues") or [] if isinstance(i, dict)],
            scores=[s for s in data.get("scores") or [] if isinstance(s, dict)],
            metadata={
                "model": getattr(response, "model", None) or request.model or self.model,
                "processing_time": time.monotonic() - started,
                "tokens": {"input": tokens.input, "output": tokens.output, "total": tokens.total},
            },
        )

    def _parse_json(self, text: str) -> Any:
        """Robustly parse JSON from LLM response, handling markdown blocks."""
        text = text.strip()
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        # Try regex extraction for markdown blocks or loose text
        match = re.search(r'(\{[\s\S]*\}|\[[\s\S]*\])', text)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                pass

        logger.error(f"Failed to parse JSON from: {text[:100]}...")
        return None
