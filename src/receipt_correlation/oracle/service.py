"""Correlation oracle backed by an Ollama chat model.

Features:
- Ollama integration with configurable models (localhost, LAN, or remote)
- Cascading model fallback (fast -> fallback)
- Concurrency limiting via semaphore
- Bounded requests; timeouts and failures degrade to "no correlation"

Privacy constraints:
- Never log prompts or raw transaction content at INFO level
- Remote Ollama: auth header support, no PII in logs
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Protocol

import httpx

from .parsing import default_verdicts, parse_verdicts
from .prompts import CorrelationPrompt

if TYPE_CHECKING:
    from ..config import Config, LLMConfig
    from ..schemas import Transaction, Verdict

logger = logging.getLogger(__name__)


class CorrelationOracle(Protocol):
    """Anything that can judge an incoming transaction against candidates.

    Implementations must return exactly one verdict per candidate, in
    candidate order, and must not raise for oracle-side failures.
    """

    def judge(self, incoming: Transaction, candidates: list[Transaction]) -> list[Verdict]:
        ...


class LLMConcurrencyLimiter:
    """Caps how many judgment requests hit the Ollama endpoint at once.

    Correlation runs on the ingestion threads, so a burst of arrivals for
    many owners would otherwise queue up on the model server. Callers that
    cannot get a slot in time skip the oracle and persist standalone.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        self.capacity = max(1, max_concurrent)
        self._slots = threading.BoundedSemaphore(self.capacity)
        self._in_flight = 0
        self._count_lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> bool:
        """Wait for a free judgment slot.

        Args:
            timeout: Seconds to wait for a slot, None waits indefinitely

        Returns:
            False when no slot freed up in time
        """
        if not self._slots.acquire(timeout=timeout):
            return False
        with self._count_lock:
            self._in_flight += 1
        return True

    def release(self) -> None:
        """Return a slot taken by acquire()."""
        with self._count_lock:
            self._in_flight -= 1
        self._slots.release()

    @contextmanager
    def slot(self, timeout: float | None = None) -> Iterator[bool]:
        """Hold a judgment slot for the duration of the block.

        Yields False, without holding anything, when none freed up in time.
        """
        if not self.acquire(timeout):
            yield False
            return
        try:
            yield True
        finally:
            self.release()

    @property
    def active_requests(self) -> int:
        with self._count_lock:
            return self._in_flight


class LLMCorrelationOracle:
    """Batched correlation judgment through Ollama's chat API.

    One request covers the incoming transaction and all its candidates.
    When the oracle is disabled, unreachable, slow, or answers garbage, every
    candidate gets a "no correlation" verdict so the caller persists the
    incoming transaction standalone.
    """

    def __init__(self, config: Config) -> None:
        """Initialize the oracle.

        Args:
            config: Application configuration.
        """
        self.config = config
        self.llm_config: LLMConfig = config.llm

        headers = {}
        if self.llm_config.auth_header:
            # "Bearer token" or "Custom-Header: value"
            if ":" in self.llm_config.auth_header:
                key, value = self.llm_config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = self.llm_config.auth_header

        self._client = httpx.Client(
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(self.llm_config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
        )
        self._prompt = CorrelationPrompt()
        self._limiter = LLMConcurrencyLimiter(max_concurrent=self.llm_config.max_concurrent)

    @property
    def is_enabled(self) -> bool:
        return self.llm_config.enabled

    @property
    def endpoint_class(self) -> str:
        """Endpoint classification for trace logging."""
        if not self.is_enabled:
            return "disabled"
        return "remote" if self.llm_config.is_remote() else "local"

    @property
    def active_requests(self) -> int:
        return self._limiter.active_requests

    def judge(self, incoming: Transaction, candidates: list[Transaction]) -> list[Verdict]:
        """Judge `incoming` against each candidate.

        Args:
            incoming: Transaction being correlated.
            candidates: Candidates in the order the verdicts must follow.

        Returns:
            One verdict per candidate, in candidate order.
        """
        if not candidates:
            return []

        if not self.is_enabled:
            logger.debug("LLM oracle disabled, no correlation assumed")
            return default_verdicts(candidates, "Correlation oracle disabled")

        user_message = self._prompt.format_user_message(incoming, candidates)
        logger.debug("Correlation prompt for %d candidates:\n%s", len(candidates), user_message)

        result = self._call_ollama(
            model=self.llm_config.model_fast,
            system_prompt=self._prompt.system_prompt,
            user_message=user_message,
        )

        if result is None and self.llm_config.model_fallback:
            logger.info("Fast model failed, falling back to %s", self.llm_config.model_fallback)
            result = self._call_ollama(
                model=self.llm_config.model_fallback,
                system_prompt=self._prompt.system_prompt,
                user_message=user_message,
            )

        if result is None:
            return default_verdicts(candidates, "Correlation oracle unavailable")

        verdicts = parse_verdicts(result["content"], candidates)
        logger.info(
            "Oracle %s judged %d candidates (%s endpoint, %d correlated)",
            result["model"],
            len(verdicts),
            self.endpoint_class,
            sum(1 for verdict in verdicts if verdict.is_correlated),
        )
        return verdicts

    def _call_ollama(
        self,
        model: str,
        system_prompt: str,
        user_message: str,
    ) -> dict | None:
        """Call Ollama API for completion with concurrency limiting.

        Args:
            model: Model name (e.g., "qwen2.5:7b").
            system_prompt: System message.
            user_message: User message.

        Returns:
            Dict with "content" and "model" keys, or None on failure.
        """
        with self._limiter.slot(timeout=self.llm_config.timeout_seconds) as acquired:
            if not acquired:
                logger.warning(
                    "Oracle request timed out waiting for concurrency slot (max=%d, active=%d)",
                    self._limiter.capacity,
                    self._limiter.active_requests,
                )
                return None
            return self._post_chat(model, system_prompt, user_message)

    def _post_chat(self, model: str, system_prompt: str, user_message: str) -> dict | None:
        url = f"{self.llm_config.ollama_url}/api/chat"
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "stream": False,
            "format": "json",
        }

        logger.debug("Calling Ollama model %s at %s", model, self.llm_config.ollama_url)
        try:
            response = self._client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            logger.warning("Ollama request timed out after %ds", self.llm_config.timeout_seconds)
            return None
        except httpx.HTTPStatusError as e:
            logger.error(
                "Ollama API error %s for model '%s' at %s",
                e.response.status_code,
                model,
                self.llm_config.ollama_url,
            )
            return None
        except httpx.RequestError as e:
            logger.error("Ollama request failed: %s (URL: %s)", e, self.llm_config.ollama_url)
            return None
        except ValueError as e:
            logger.error("Ollama returned a non-JSON body: %s", e)
            return None

        message = data.get("message") if isinstance(data, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            logger.error("Ollama model %s returned an unexpected body shape", model)
            return None

        logger.debug("Ollama %s returned %d chars", model, len(content))
        return {"content": content, "model": model}

    def close(self) -> None:
        """Close HTTP client."""
        self._client.close()

    def __enter__(self) -> LLMCorrelationOracle:
        return self

    def __exit__(self, *args) -> None:
        self.close()
