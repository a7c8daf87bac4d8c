"""LLM integration for quest scoring and battle narration with an OpenAI-compatible API."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import openai

logger = logging.getLogger(__name__)


class LLMGenerationError(RuntimeError):
    """Raised when the LLM cannot produce usable content."""


class LLMNotEnabledError(LLMGenerationError):
    """Raised when the LLM client is disabled."""


class SafetyLevel(Enum):
    """Content safety levels for moderation."""
    SAFE = "safe"
    MINOR_CONCERN = "minor_concern"
    MODERATE_CONCERN = "moderate_concern"
    BLOCKED = "blocked"


@dataclass
class LLMConfig:
    """Configuration for LLM client."""
    api_base: str = "http://localhost:5000/v1"
    api_key: str = "not-needed-for-local"
    model_name: str = "local-model"
    temperature: float = 0.8
    max_tokens: int = 500
    timeout: int = 30
    retry_attempts: int = 3
    enabled: bool = True
    safety_enabled: bool = True
    mock_mode: bool = False
    retry_schedule: Optional[List[float]] = None

    @classmethod
    def from_env(cls) -> 'LLMConfig':
        """Load configuration from environment variables."""
        mock_mode = os.getenv("LLM_MODE", "").lower() == "mock"
        schedule_env = os.getenv("LLM_RETRY_SCHEDULE")
        retry_schedule: Optional[List[float]] = None
        if schedule_env:
            try:
                retry_schedule = [float(item.strip()) for item in schedule_env.split(",") if item.strip()]
            except ValueError:
                logger.warning("Invalid LLM_RETRY_SCHEDULE value: %s", schedule_env)
                retry_schedule = None

        return cls(
            api_base=os.getenv("LLM_API_BASE", "http://localhost:5000/v1"),
            api_key=os.getenv("LLM_API_KEY", "not-needed-for-local"),
            model_name=os.getenv("LLM_MODEL_NAME", "local-model"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.8")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "500")),
            timeout=int(os.getenv("LLM_TIMEOUT", "30")),
            retry_attempts=int(os.getenv("LLM_RETRY_ATTEMPTS", "3")),
            enabled=os.getenv("LLM_ENABLED", "true").lower() == "true",
            safety_enabled=os.getenv("LLM_SAFETY_ENABLED", "true").lower() == "true",
            mock_mode=mock_mode,
            retry_schedule=retry_schedule,
        )


class ContentModerator:
    """Keyword moderation applied to generated battle narration."""

    def __init__(self):
        self.blocked_words = [
            "murder",
            "terrorist",
            "suicide",
            "racist",
        ]
        self.warning_phrases = [
            "hate speech",
            "slur",
            "graphic violence",
        ]

    def check_content(self, text: str) -> SafetyLevel:
        text_lower = text.lower()

        for word in self.blocked_words:
            if word in text_lower:
                return SafetyLevel.BLOCKED

        concern_count = sum(1 for phrase in self.warning_phrases if phrase in text_lower)
        if concern_count >= 3:
            return SafetyLevel.MODERATE_CONCERN
        elif concern_count >= 1:
            return SafetyLevel.MINOR_CONCERN

        return SafetyLevel.SAFE


class LLMClient:
    """Blocking OpenAI-compatible chat client with retries and moderation."""

    def __init__(self, config: Optional[LLMConfig] = None, *, sleep=time.sleep, telemetry=None):
        self.config = config or LLMConfig.from_env()
        self.telemetry = telemetry
        self.moderator = ContentModerator() if self.config.safety_enabled else None
        self._retry_schedule = self.config.retry_schedule or [1.0, 3.0, 10.0]
        self._sleep = sleep
        self.enabled = self.config.enabled
        self.client = None

        if self.config.mock_mode:
            logger.info("LLM client initialised in mock mode")
            return
        if not self.enabled:
            logger.info("LLM client disabled by configuration")
            return

        self.client = openai.OpenAI(
            api_key=self.config.api_key,
            base_url=self.config.api_base,
            timeout=self.config.timeout,
        )
        logger.info("LLM client initialized with base URL: %s", self.config.api_base)

    def complete(
        self,
        prompt: str,
        *,
        system: str,
        context: Optional[Dict[str, Any]] = None,
        moderate: bool = True,
        json_mode: bool = False,
    ) -> str:
        """Return the model's reply to ``prompt``.

        Raises :class:`LLMNotEnabledError` when the client is switched off and
        :class:`LLMGenerationError` when every attempt fails or the reply is
        blocked by the moderator. Callers own the fallback.
        """

        if self.config.mock_mode:
            return self._mock_generation(prompt, context or {}, json_mode)
        if not self.enabled or self.client is None:
            raise LLMNotEnabledError("LLM client is disabled")

        purpose = str((context or {}).get("type", "completion"))
        start_time = time.perf_counter()
        try:
            text = self._generate(prompt, system, moderate=moderate, json_mode=json_mode)
        except LLMGenerationError as exc:
            self._track(purpose, False, start_time, str(exc))
            raise
        self._track(purpose, True, start_time)
        return text

    def _track(self, purpose: str, success: bool, start_time: float, error: Optional[str] = None) -> None:
        if self.telemetry is None:
            return
        duration_ms = (time.perf_counter() - start_time) * 1000
        try:
            self.telemetry.track_llm_activity(purpose, success=success, duration_ms=duration_ms, error=error)
        except Exception:
            logger.debug("Telemetry tracking for LLM call failed", exc_info=True)

    def _generate(self, prompt: str, system: str, *, moderate: bool, json_mode: bool) -> str:
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]
        response = self._call_with_retry(messages, json_mode=json_mode)
        if response is None:
            raise LLMGenerationError("LLM call exhausted retries")

        content = response.choices[0].message.content
        if not content or not content.strip():
            raise LLMGenerationError("LLM returned an empty response")
        text = content.strip()

        if moderate and self.moderator:
            safety = self.moderator.check_content(text)
            if safety == SafetyLevel.BLOCKED:
                logger.warning("Generated content blocked for safety: %s...", text[:50])
                raise LLMGenerationError("Generated content blocked by moderator")
            if safety in (SafetyLevel.MINOR_CONCERN, SafetyLevel.MODERATE_CONCERN):
                logger.info("Content passed with %s: %s...", safety.value, text[:50])
        return text

    def _call_with_retry(self, messages: List[Dict[str, str]], *, json_mode: bool) -> Optional[Any]:
        attempts = max(1, self.config.retry_attempts)
        extra: Dict[str, Any] = {}
        if json_mode:
            extra["response_format"] = {"type": "json_object"}
        for attempt in range(attempts):
            try:
                return self.client.chat.completions.create(
                    model=self.config.model_name,
                    messages=messages,
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_tokens,
                    **extra,
                )
            except openai.OpenAIError as e:
                logger.warning("LLM API call attempt %d failed: %s", attempt + 1, e)
                if attempt < attempts - 1:
                    delay = self._retry_schedule[min(attempt, len(self._retry_schedule) - 1)]
                    self._sleep(delay)
                else:
                    logger.error("All retry attempts exhausted for LLM call")
        return None

    def _mock_generation(self, prompt: str, context: Dict[str, Any], json_mode: bool) -> str:
        """Return deterministic text in mock mode."""
        if json_mode:
            return "{}"
        summary = context.get("summary") or context.get("type", "event")
        return f"[MOCK] {summary or prompt}"


__all__ = [
    "ContentModerator",
    "LLMClient",
    "LLMConfig",
    "LLMGenerationError",
    "LLMNotEnabledError",
    "SafetyLevel",
]
