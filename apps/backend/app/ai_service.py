"""
Completion service for OpenRouter integration.
Turns a single prompt into raw model text for the extraction pipeline.
Includes retry with exponential backoff and circuit breaker for resilience.
"""
import os
import time
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.errors import InferenceFailure

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "google/gemini-1.5-pro"
DEFAULT_INFERENCE_TIMEOUT = 60.0

# Circuit breaker configuration
CIRCUIT_BREAKER_ERROR_THRESHOLD = 0.50  # 50% error rate triggers circuit breaker
CIRCUIT_BREAKER_WINDOW_SECONDS = 300  # 5 minutes
CIRCUIT_BREAKER_RESET_SECONDS = 60  # 1 minute before retry
CIRCUIT_BREAKER_MIN_CALLS = 10
MAX_ATTEMPTS = 3
INITIAL_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 10.0

SYSTEM_PROMPT = (
    "You are a structured data extraction engine. "
    "Always return valid JSON only, no markdown, no explanations."
)


class CircuitBreaker:
    """Simple circuit breaker pattern for API resilience."""

    def __init__(
        self,
        error_threshold: float = CIRCUIT_BREAKER_ERROR_THRESHOLD,
        window_seconds: int = CIRCUIT_BREAKER_WINDOW_SECONDS,
        reset_seconds: int = CIRCUIT_BREAKER_RESET_SECONDS,
        min_calls: int = CIRCUIT_BREAKER_MIN_CALLS,
    ):
        self.error_threshold = error_threshold
        self.window_seconds = window_seconds
        self.reset_seconds = reset_seconds
        self.min_calls = min_calls
        self.error_history = deque()  # (timestamp, is_error)
        self.circuit_open = False
        self.circuit_open_since: Optional[float] = None

    def record_call(self, is_error: bool):
        """Record a call result."""
        now = time.time()
        self.error_history.append((now, is_error))

        cutoff = now - self.window_seconds
        while self.error_history and self.error_history[0][0] < cutoff:
            self.error_history.popleft()

        if len(self.error_history) >= self.min_calls:
            errors = sum(1 for _, is_err in self.error_history if is_err)
            error_rate = errors / len(self.error_history)

            if error_rate >= self.error_threshold and not self.circuit_open:
                self.circuit_open = True
                self.circuit_open_since = now
                logger.warning(f"[ai_service] Circuit breaker OPENED: error rate {error_rate:.1%} >= {self.error_threshold:.1%}")

        if not is_error and self.circuit_open:
            # A success in half-open state closes the circuit
            self.circuit_open = False
            self.circuit_open_since = None
            logger.info("[ai_service] Circuit breaker CLOSED after successful call")

    def can_make_call(self) -> bool:
        """Check if we can make a call (circuit is closed or reset period passed)."""
        if not self.circuit_open:
            return True

        if self.circuit_open_since is not None:
            elapsed = time.time() - self.circuit_open_since
            if elapsed >= self.reset_seconds:
                logger.info("[ai_service] Circuit breaker half-open, letting one call through")
                self.circuit_open_since = time.time()
                return True

        return False


class CompletionService(ABC):
    """Single-shot text completion: prompt in, raw text out."""

    engine: str = "unknown"
    model: Optional[str] = None

    @abstractmethod
    async def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """
        Args:
            prompt: User prompt
            system_prompt: Overrides the default JSON-extraction system prompt

        Raises:
            InferenceFailure: the service could not produce a completion
        """
        raise NotImplementedError


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError))


class OpenRouterCompletionService(CompletionService):
    """Completion service backed by the OpenRouter chat completions API."""

    engine = "openrouter"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: int = MAX_ATTEMPTS,
        max_tokens: int = 4000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("OPENROUTER_API_KEY")
        self.model = model or os.getenv("OPENROUTER_MODEL", DEFAULT_MODEL)
        self.base_url = (base_url or os.getenv("OPENROUTER_BASE_URL", OPENROUTER_BASE_URL)).rstrip("/")
        self.timeout = timeout if timeout is not None else DEFAULT_INFERENCE_TIMEOUT
        self.max_attempts = max(1, max_attempts)
        self.max_tokens = max_tokens
        self._transport = transport
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        if not self.enabled:
            logger.warning("[ai_service] OpenRouter API key not configured. Extraction will fail until it is set.")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _payload(self, prompt: str, system_prompt: Optional[str] = None) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt or SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0,
            "max_tokens": self.max_tokens,
        }

    async def _post_once(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": "https://apexscrape.app",
            "X-Title": "ApexScrape Extraction",
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers=headers,
                json=self._payload(prompt, system_prompt),
            )
            response.raise_for_status()
            data = response.json()

        if "error" in data and not data.get("choices"):
            # OpenRouter can report provider errors inside a 200 body
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise InferenceFailure(f"provider error: {message}")

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise InferenceFailure(f"unexpected response format: {str(data)[:200]}")
        if content is None:
            raise InferenceFailure("provider returned an empty completion")
        return content

    async def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """
        Make a call to OpenRouter with retry and circuit breaker.

        Implements:
        - Exponential backoff retry on timeouts, network errors, 429 and 5xx
        - No retry on other 4xx
        - Circuit breaker to stop calling while the error rate is high
        - Hard wall-clock timeout across all attempts
        """
        if not self.enabled:
            raise InferenceFailure("completion service not configured (OPENROUTER_API_KEY missing)")

        if not self.circuit_breaker.can_make_call():
            raise InferenceFailure("completion service circuit breaker is open")

        async def _attempts() -> str:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=INITIAL_RETRY_DELAY, min=INITIAL_RETRY_DELAY, max=MAX_RETRY_DELAY),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        logger.info(f"[ai_service] Retry attempt {number}/{self.max_attempts}")
                    return await self._post_once(prompt, system_prompt)
            raise InferenceFailure("no completion attempts were made")

        try:
            content = await asyncio.wait_for(_attempts(), timeout=self.timeout * self.max_attempts)
        except InferenceFailure:
            self.circuit_breaker.record_call(True)
            raise
        except asyncio.TimeoutError:
            self.circuit_breaker.record_call(True)
            logger.error(f"[ai_service] Completion timed out after {self.timeout * self.max_attempts:g}s")
            raise InferenceFailure("completion service timed out")
        except httpx.HTTPStatusError as e:
            self.circuit_breaker.record_call(True)
            detail = e.response.text[:300]
            logger.error(f"[ai_service] HTTP {e.response.status_code} from completion service: {detail}")
            raise InferenceFailure(f"HTTP {e.response.status_code} from completion service: {detail}")
        except (httpx.HTTPError, RetryError, ValueError) as e:
            self.circuit_breaker.record_call(True)
            logger.error(f"[ai_service] Completion call failed: {e}")
            raise InferenceFailure(str(e) or type(e).__name__)

        self.circuit_breaker.record_call(False)
        return content
