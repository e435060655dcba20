"""Retry policy for worker failures.

Failures are classified into a small taxonomy. Only classifications on the
allow-list (crash, timeout, validation by default) are retried; the rest
propagate on the first failure. Delays grow exponentially, are capped, and
carry ±10% jitter.

Attempt counters live in memory only. A process restart starts every
worker's count from zero again.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TypeVar

from pydantic import ValidationError

from orchestral.config import AutoRetryConfig
from orchestral.events import RETRY_EVENT, EventBus

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER = 0.1


class ErrorClassification(StrEnum):
    CRASH = "crash"             # Worker process died
    TIMEOUT = "timeout"         # Worker exceeded its time limit
    VALIDATION = "validation"   # Worker output failed schema checks
    PERMISSION = "permission"   # Filesystem/credential denial -> stop
    RESOURCE = "resource"       # Out of memory / disk -> stop
    OTHER = "other"             # Unknown -> stop


class WorkerError(Exception):
    """A worker failure with a known classification."""

    def __init__(self, message: str, classification: ErrorClassification = ErrorClassification.CRASH) -> None:
        super().__init__(message)
        self.classification = ErrorClassification(classification)


def classify_error(error: BaseException) -> ErrorClassification:
    """Map an exception onto the retry taxonomy. Unknown errors are not retryable."""
    if isinstance(error, WorkerError):
        return error.classification
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorClassification.TIMEOUT
    if isinstance(error, PermissionError):
        return ErrorClassification.PERMISSION
    if isinstance(error, MemoryError):
        return ErrorClassification.RESOURCE
    if isinstance(error, OSError) and error.errno in (errno.ENOSPC, errno.ENOMEM, errno.EMFILE):
        return ErrorClassification.RESOURCE
    if isinstance(error, ValidationError):
        return ErrorClassification.VALIDATION
    if isinstance(error, (ChildProcessError, BrokenPipeError, ConnectionResetError)):
        return ErrorClassification.CRASH
    return ErrorClassification.OTHER


@dataclass
class RetryConfig:
    max_attempts: int = 2
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    recoverable_errors: list[ErrorClassification] = field(default_factory=lambda: [
        ErrorClassification.CRASH,
        ErrorClassification.TIMEOUT,
        ErrorClassification.VALIDATION,
    ])

    @classmethod
    def from_auto_retry(cls, cfg: AutoRetryConfig) -> RetryConfig:
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay_ms=cfg.base_delay_ms,
            max_delay_ms=cfg.max_delay_ms,
            backoff_multiplier=cfg.backoff_multiplier,
            recoverable_errors=[ErrorClassification(e) for e in cfg.recoverable_errors],
        )


@dataclass(frozen=True)
class RetryContext:
    """Key for an attempt counter."""
    worker: str
    error_type: str
    run_id: str


class RetryManager:
    """Wraps an async operation with classified, bounded retries."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        event_bus: EventBus | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or RetryConfig()
        self.event_bus = event_bus
        self._sleep = sleep
        self._attempts: dict[RetryContext, int] = {}

    def is_recoverable(self, classification: str) -> bool:
        return classification in self.config.recoverable_errors

    def should_retry(self, classification: str, attempts_so_far: int) -> bool:
        return self.is_recoverable(classification) and attempts_so_far < self.config.max_attempts

    def get_delay(self, attempt: int) -> float:
        """Delay in milliseconds before the attempt after `attempt`."""
        delay = min(
            self.config.max_delay_ms,
            self.config.base_delay_ms * self.config.backoff_multiplier ** (attempt - 1),
        )
        return delay * random.uniform(1 - JITTER, 1 + JITTER)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: RetryContext,
    ) -> T:
        """Run operation, retrying recoverable failures. Re-raises the final error."""
        attempt = self._attempts.get(context, 0)

        while True:
            attempt += 1
            self._attempts[context] = attempt
            self._emit("retry_started", context, attempt=attempt,
                       max_attempts=self.config.max_attempts)
            try:
                result = await operation()
            except Exception as e:
                classification = classify_error(e)
                self._emit("retry_failed", context, attempt=attempt,
                           error=str(e), classification=classification)

                if not self.should_retry(classification, attempt):
                    self._attempts.pop(context, None)
                    self._emit("retry_exhausted", context, total_attempts=attempt,
                               classification=classification)
                    logger.warning(
                        "[%s] %s gave up after %d attempt(s) (%s): %s",
                        context.run_id, context.worker, attempt, classification, e,
                    )
                    raise

                delay_ms = self.get_delay(attempt)
                self._emit("retry_delay", context, attempt=attempt, delay_ms=delay_ms)
                logger.info(
                    "[%s] %s failed (%s), retrying in %.0fms",
                    context.run_id, context.worker, classification, delay_ms,
                )
                await self._sleep(delay_ms / 1000)
                continue

            self._attempts.pop(context, None)
            self._emit("retry_success", context, attempt=attempt)
            return result

    def get_attempt_count(self, context: RetryContext) -> int:
        return self._attempts.get(context, 0)

    def reset_attempts(self, context: RetryContext) -> None:
        self._attempts.pop(context, None)

    def reset_all(self) -> None:
        self._attempts.clear()

    def _emit(self, type: str, context: RetryContext, **data) -> None:
        if self.event_bus:
            self.event_bus.emit(
                RETRY_EVENT, type, context.run_id,
                worker=context.worker, error_type=context.error_type, **data,
            )
