"""
AI Service Layer facade used by the analyzers, the mode adapter, the context window
and the gap pipeline.

`AIService.complete()` is the only way the core talks to a language model. It takes the
caller's remaining deadline, bounds the call with it, and converts every SDK failure into
one of three errors (timeout, unavailable, rate limited) so callers can degrade without
knowing about the SDK.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional

import openai

from learnflow.config import CONFIG
from learnflow.config.logging_config import get_logger
from learnflow.monitoring.metrics import AI_REQUEST_TIME, ERROR_COUNT
from learnflow.shared.deadline import Deadline
from learnflow.shared.models import Mode

from .provider import get_client

logger = get_logger(__name__)


class AIServiceError(Exception):
    """Base class for AI Service Layer failures."""


class AITimeout(AIServiceError):
    """The call did not finish within the remaining deadline."""


class AIUnavailable(AIServiceError):
    """The provider could not be reached, returned an error, or returned no content."""


class AIRateLimited(AIServiceError):
    """The provider rejected the call because of rate limiting."""


class AIService:
    """
    Deadline-aware wrapper around the OpenAI-compatible chat completions API.

    The client is built lazily on first use through `client_factory` (defaults to
    `provider.get_client`), so constructing the service never needs credentials.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, client: Any = None,
                 client_factory: Optional[Callable[[], Any]] = None):
        self.config = config or CONFIG
        self._client = client
        self._client_factory = client_factory or get_client
        self._mode_instructions = self.config.get("modes", {}).get("instructions", {})

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = self._client_factory()
            except (RuntimeError, ValueError) as e:
                raise AIUnavailable(f"LLM client could not be created: {e}") from e
        return self._client

    def _system_message(self, mode: Optional[Mode]) -> str:
        base = "You are a programming learning assistant."
        if mode is None:
            return base
        return f"{base} {self._mode_instructions.get(mode.value, '')}".strip()

    async def complete(
        self,
        prompt: str,
        mode: Optional[Mode],
        max_tokens: int,
        deadline: Deadline,
        model: str = "tutor",
    ) -> str:
        """
        Run one completion bounded by the caller's remaining deadline.

        Args:
            prompt (str): Fully rendered user prompt.
            mode (Optional[Mode]): Learning mode used to pick the system instruction; None for utility calls.
            max_tokens (int): Completion token ceiling.
            deadline (Deadline): The query deadline; the call is cancelled when it expires.
            model (str): Key under CONFIG["llm"]["models"] ("tutor" or "utility").

        Returns:
            str: The stripped completion text.

        Raises:
            AITimeout, AIUnavailable, AIRateLimited
        """
        remaining = deadline.remaining()
        if remaining <= 0:
            ERROR_COUNT.labels(type='ai', location='deadline').inc()
            raise AITimeout("No deadline budget left for the AI call")

        model_config = self.config["llm"]["models"][model]
        settings = model_config.get("settings", {})
        start_time = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=model_config["name"],
                    messages=[
                        {"role": "system", "content": self._system_message(mode)},
                        {"role": "user", "content": prompt},
                    ],
                    max_tokens=min(int(max_tokens), int(settings.get("max_tokens", max_tokens))),
                    temperature=settings.get("temperature", 0.3),
                    top_p=settings.get("top_p", 1.0),
                ),
                timeout=remaining,
            )
        except asyncio.TimeoutError as e:
            self._record_failure("timeout", model_config["name"], e)
            raise AITimeout(f"AI call exceeded {remaining:.2f}s budget") from e
        except openai.APITimeoutError as e:
            self._record_failure("timeout", model_config["name"], e)
            raise AITimeout(str(e)) from e
        except openai.RateLimitError as e:
            self._record_failure("rate_limited", model_config["name"], e)
            raise AIRateLimited(str(e)) from e
        except openai.OpenAIError as e:
            self._record_failure("unavailable", model_config["name"], e)
            raise AIUnavailable(str(e)) from e
        finally:
            AI_REQUEST_TIME.labels(model=model_config["name"]).observe(time.perf_counter() - start_time)

        content = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not content:
            self._record_failure("empty", model_config["name"], None)
            raise AIUnavailable("AI service returned an empty completion")
        return content

    def _record_failure(self, kind: str, model_name: str, error: Optional[Exception]) -> None:
        ERROR_COUNT.labels(type='ai', location=kind).inc()
        logger.warning(
            "[AIService] Completion failed (%s) for model %s: %s",
            kind, model_name, error,
            extra={'extra_fields': {'ai_failure': kind, 'model': model_name}},
        )
