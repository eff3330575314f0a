"""
AI provider adapters behind a name-keyed registry.

The generation pipeline only knows the AIProvider interface; adding a
provider means registering another implementation.
"""
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import google.generativeai as genai
import openai
from pydantic import ValidationError

from docquiz.domain.errors import (
    ApiError, ProviderError, ProviderNotConfiguredError, ProviderQuotaExceededError,
    ProviderRateLimitedError, ProviderTimeoutError,
)
from docquiz.domain.models.api_models import ProviderQuizResponse
from docquiz.domain.models.db_models import Question, QuizConfig
from dq_utils.ai_safety import build_quiz_prompt
from dq_utils.logger_utils import logger

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


@dataclass
class QuizGenerationRequest:
    text: str
    config: QuizConfig
    topic: Optional[str] = None


@dataclass
class GeneratedQuiz:
    title: str
    topic: Optional[str]
    questions: List[Question]
    provider: str
    model: str
    tokens_used: int = 0
    cost: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


class AIProvider(ABC):
    name: str = ""
    model: str = ""
    # USD per one million tokens
    cost_per_million_tokens: float = 0.0

    @abstractmethod
    def _complete(self, prompt: str) -> tuple:
        """Return (raw response text, total tokens used)."""

    def calculate_cost(self, tokens: int) -> float:
        return round(tokens / 1_000_000 * self.cost_per_million_tokens, 6)

    def validate_response(self, payload: Any) -> bool:
        try:
            self._parse_questions(payload)
        except (ValidationError, ValueError, TypeError):
            return False
        return True

    def generate_quiz(self, request: QuizGenerationRequest) -> GeneratedQuiz:
        config = request.config
        prompt = build_quiz_prompt(
            request.text,
            num_questions=config.num_questions,
            difficulty=config.difficulty,
            question_types=[qt.value for qt in config.question_types],
            language=config.language,
            include_explanations=config.include_explanations,
            topic=request.topic,
        )
        raw_text, tokens = self._complete(prompt)
        payload = _load_json(raw_text, self.name)
        try:
            parsed, questions = self._parse_questions(payload)
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning("Provider returned an invalid quiz", extra={"provider": self.name, "error": str(e)})
            raise ProviderError(f"{self.name} returned an invalid quiz: {e}", provider=self.name) from e

        logger.info(
            "Quiz generated",
            extra={"provider": self.name, "model": self.model, "questions": len(questions), "tokens": tokens},
        )
        return GeneratedQuiz(
            title=parsed.title,
            topic=parsed.topic or request.topic,
            questions=questions,
            provider=self.name,
            model=self.model,
            tokens_used=tokens,
            cost=self.calculate_cost(tokens),
            raw=payload,
        )

    @staticmethod
    def _parse_questions(payload: Any):
        parsed = ProviderQuizResponse.model_validate(payload)
        # Question assigns a uuid when the provider leaves "id" out
        questions = [Question.model_validate(item) for item in parsed.questions]
        return parsed, questions


def _load_json(raw_text: str, provider: str) -> Dict[str, Any]:
    try:
        return json.loads(_FENCE.sub("", (raw_text or "").strip()))
    except json.JSONDecodeError as e:
        raise ProviderError(f"{provider} returned malformed JSON", provider=provider) from e


class GeminiProvider(AIProvider):
    name = "gemini"
    cost_per_million_tokens = 0.075

    def __init__(self, api_key: str, model: str = "gemini-2.5-flash", timeout: int = 60):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        if not self.api_key:
            raise ProviderError("Gemini API key is not configured.", provider=self.name, retryable=False)
        genai.configure(api_key=self.api_key)
        self._initialized = True

    def _complete(self, prompt: str) -> tuple:
        self._ensure_initialized()
        model = genai.GenerativeModel(
            self.model,
            generation_config={
                "response_mime_type": "application/json",
                "temperature": 0.7,
                "top_k": 40,
                "top_p": 0.95,
            },
        )
        response = model.generate_content(prompt, request_options={"timeout": float(self.timeout)})
        usage = getattr(response, "usage_metadata", None)
        tokens = int(getattr(usage, "total_token_count", 0) or 0)
        return response.text, tokens


class OpenAIProvider(AIProvider):
    name = "openai"
    cost_per_million_tokens = 0.15

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: int = 60):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def _complete(self, prompt: str) -> tuple:
        if not self.api_key:
            raise ProviderError("OpenAI API key is not configured.", provider=self.name, retryable=False)
        client = openai.OpenAI(api_key=self.api_key, timeout=float(self.timeout))
        response = client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.7,
            response_format={"type": "json_object"},
        )
        tokens = response.usage.total_tokens if response.usage else 0
        return response.choices[0].message.content, tokens


class ProviderRegistry:
    def __init__(self):
        self._providers: Dict[str, AIProvider] = {}

    def register(self, provider: AIProvider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> AIProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotConfiguredError(f"Unsupported AI provider: {name}", provider=name) from None

    def names(self) -> List[str]:
        return sorted(self._providers)


def build_default_registry(settings) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(GeminiProvider(settings.GEMINI_API_KEY, settings.DQ_GEMINI_MODEL,
                                     settings.DQ_PROVIDER_TIMEOUT_SECONDS))
    registry.register(OpenAIProvider(settings.OPENAI_API_KEY, settings.DQ_OPENAI_MODEL,
                                     settings.DQ_PROVIDER_TIMEOUT_SECONDS))
    return registry


def classify_provider_error(error: Exception, provider: Optional[str] = None) -> ApiError:
    """Map any provider-side exception onto the provider error taxonomy."""
    if isinstance(error, ApiError):
        return error

    message = str(error) or type(error).__name__
    lowered = message.lower()
    status = getattr(error, "status_code", None) or getattr(error, "code", None)

    if status == 429 or "429" in lowered or "rate limit" in lowered or "resource exhausted" in lowered:
        classified = ProviderRateLimitedError(f"AI provider rate limit exceeded: {message}", provider)
    elif "quota" in lowered:
        classified = ProviderQuotaExceededError(f"AI provider quota exceeded: {message}", provider)
    elif "timeout" in lowered or "timed out" in lowered or "deadline" in lowered:
        classified = ProviderTimeoutError(f"AI provider timed out: {message}", provider)
    else:
        classified = ProviderError(f"AI provider error: {message}", provider)
    return classified
