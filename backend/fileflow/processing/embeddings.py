"""
Embedding Service: description → fixed-length vector, with retry
══════════════════════════════════════════════════════════════════

One description per call; the vector is stored on the file record itself
(pgvector column), so its length must equal EMBEDDING_DIMENSIONS.

Retry policy:
  On RateLimitError / 5xx / timeouts / connection errors
                           → wait RETRY_BASE_DELAY × 2^(attempt-1), up to EMBEDDING_MAX_RETRIES
  On AuthenticationError / BadRequestError
                           → fail immediately (not transient)
  Wrong vector length      → fail immediately
"""

from __future__ import annotations

import asyncio
import logging
import time

from fileflow.core.config import settings

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY = 1.0    # seconds, doubles each retry
RETRY_MAX_DELAY  = 30.0

_RETRYABLE_EXCEPTION_TYPES = (
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
)


def _is_retryable(exc: Exception) -> bool:
    """True if the exception class name suggests a transient provider error."""
    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)


class EmbeddingFailed(Exception):
    def __init__(self, message: str, reason: str = "API_ERROR", details: dict | None = None) -> None:
        super().__init__(message)
        self.reason  = reason      # API_ERROR | DIMENSION_MISMATCH | EMPTY_INPUT
        self.details = details or {}


class EmbeddingService:
    """
    Usage:
        vector = await EmbeddingService().embed(description)
    """

    def __init__(
        self,
        client=None,                 # openai.AsyncOpenAI; injectable for tests
        model:       str | None = None,
        dimensions:  int | None = None,
        max_retries: int | None = None,
        base_delay:  float = RETRY_BASE_DELAY,
    ) -> None:
        self._client      = client
        self._model       = model or settings.embedding_model
        self._dimensions  = dimensions or settings.embedding_dimensions
        self._max_retries = settings.embedding_max_retries if max_retries is None else max_retries
        self._base_delay  = base_delay

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise EmbeddingFailed("Cannot embed empty text", reason="EMPTY_INPUT")

        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                delay = min(self._base_delay * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | attempt=%d delay=%.1fs error=%s",
                    attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            try:
                vector = await self._call_openai(text)
            except Exception as exc:
                last_error = exc
                if not _is_retryable(exc):
                    logger.error("Non-retryable embedding error: %s %s", type(exc).__name__, exc)
                    raise EmbeddingFailed(
                        f"Embedding provider error: {exc}",
                        details={"error_type": type(exc).__name__},
                    ) from exc
                continue

            if len(vector) != self._dimensions:
                raise EmbeddingFailed(
                    f"Embedding has {len(vector)} dimensions, expected {self._dimensions}",
                    reason="DIMENSION_MISMATCH",
                    details={"received": len(vector), "expected": self._dimensions},
                )
            return vector

        raise EmbeddingFailed(
            f"Embedding failed after {self._max_retries} retries: {last_error}",
            details={"error_type": type(last_error).__name__},
        ) from last_error

    async def _call_openai(self, text: str) -> list[float]:
        t_api = time.monotonic()
        response = await self.client.embeddings.create(
            model=self._model,
            input=[text],
            dimensions=self._dimensions,
        )
        tokens_used = response.usage.total_tokens if response.usage else 0
        logger.debug(
            "OpenAI embeddings | model=%s tokens=%d api_ms=%.0f",
            self._model, tokens_used, (time.monotonic() - t_api) * 1000,
        )
        return list(response.data[0].embedding)
