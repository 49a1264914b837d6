"""
Retry executor with exponential backoff, per-attempt timeouts and fallback.
"""

import asyncio
import errno
import random
import time
from dataclasses import dataclass, replace
from typing import Dict, Any, Optional, Callable, Awaitable, FrozenSet, Generic, TypeVar

from aem_shared.logging import get_logger
from aem_shared.errors import AEMException, OperationTimeoutError

T = TypeVar("T")

_NETWORK_ERRORS = frozenset({
    "ECONNRESET",
    "ENOTFOUND",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "EHOSTUNREACH",
    "ENETUNREACH",
    "EAI_AGAIN",
    "TEMPORARY_FAILURE",
    "SERVICE_UNAVAILABLE",
    "TIMEOUT",
})

_TAXONOMY_RETRYABLE = frozenset({"NETWORK_ERROR", "TIMEOUT_ERROR", "SERVER_ERROR"})

_AEM_BUSY_ERRORS = frozenset({"AEM_UNAVAILABLE", "AEM_BUSY", "AEM_MAINTENANCE"})

_DEFAULT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior. Durations are in seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_errors: FrozenSet[str] = _NETWORK_ERRORS | _TAXONOMY_RETRYABLE
    retryable_status_codes: FrozenSet[int] = _DEFAULT_STATUS_CODES
    timeout: float = 30.0
    fallback_enabled: bool = True
    fallback_delay: float = 5.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")

    def with_overrides(self, **changes) -> "RetryConfig":
        """Copy of this config with the given non-None fields replaced."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def for_kind(cls, kind: str) -> "RetryConfig":
        """Named preset for a call kind (default, http, aem, cache, bulk)."""
        try:
            return RETRY_PRESETS[kind]
        except KeyError:
            raise ValueError(f"Unknown retry preset: {kind}") from None


RETRY_PRESETS: Dict[str, RetryConfig] = {
    "default": RetryConfig(),
    "http": RetryConfig(
        max_attempts=5,
        base_delay=0.5,
        max_delay=10.0,
        retryable_status_codes=_DEFAULT_STATUS_CODES | {520, 521, 522, 523, 524},
    ),
    "aem": RetryConfig(
        max_attempts=3,
        base_delay=1.0,
        max_delay=15.0,
        retryable_errors=_NETWORK_ERRORS | _TAXONOMY_RETRYABLE | _AEM_BUSY_ERRORS,
    ),
    "cache": RetryConfig(
        max_attempts=2,
        base_delay=0.1,
        max_delay=1.0,
        retryable_errors=frozenset({
            "ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "ETIMEDOUT",
            "REDIS_CONNECTION_ERROR", "REDIS_TIMEOUT", "NETWORK_ERROR", "TIMEOUT_ERROR",
        }),
        retryable_status_codes=frozenset(),
    ),
    "bulk": RetryConfig(
        max_attempts=2,
        base_delay=2.0,
        max_delay=30.0,
        retryable_errors=_NETWORK_ERRORS | _TAXONOMY_RETRYABLE | _AEM_BUSY_ERRORS | {"BULK_OPERATION_FAILED"},
    ),
}


@dataclass
class RetryResult(Generic[T]):
    """Outcome of one retried operation."""

    success: bool
    result: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    total_time: float = 0.0
    fallback_used: bool = False


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before the attempt following ``attempt`` (1-based)."""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))

    # Apply max delay cap
    delay = min(delay, config.max_delay)

    # Up to 25% additive jitter
    if config.jitter:
        delay += random.uniform(0.0, 0.25 * delay)

    return max(0.0, delay)


def is_retryable(error: BaseException, config: RetryConfig) -> bool:
    """Classify whether ``error`` should be retried under ``config``."""
    if isinstance(error, AEMException):
        if error.kind.value in config.retryable_errors:
            return True
        if error.status_code in config.retryable_status_codes:
            return True
        code = error.details.get("error_code")
        if code and code in config.retryable_errors:
            return True
        return error.recoverable

    if isinstance(error, asyncio.TimeoutError):
        return "TIMEOUT" in config.retryable_errors or "TIMEOUT_ERROR" in config.retryable_errors

    code = getattr(error, "code", None)
    if code is None and isinstance(error, OSError) and error.errno is not None:
        code = errno.errorcode.get(error.errno)
    if isinstance(code, str) and code in config.retryable_errors:
        return True

    status = getattr(error, "status_code", None)
    if status is not None and status in config.retryable_status_codes:
        return True

    message = str(error).lower()
    return any(token.lower() in message for token in config.retryable_errors)


class RetryExecutor:
    """Runs async operations under a retry policy."""

    def __init__(self, default_config: Optional[RetryConfig] = None):
        self.default_config = default_config or RETRY_PRESETS["default"]
        self.stats: Dict[str, Dict[str, int]] = {}
        self.logger = get_logger("retry_executor")

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        config: Optional[RetryConfig] = None,
        fallback: Optional[Callable[[], Awaitable[T]]] = None,
        context: str = "operation",
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> RetryResult[T]:
        """Execute ``operation`` with retries, then ``fallback`` if it never succeeded."""
        config = config or self.default_config
        start_time = time.monotonic()
        last_error: Optional[BaseException] = None
        attempts = 0

        for attempt in range(1, config.max_attempts + 1):
            attempts = attempt
            self._record(context, "attempts")
            try:
                result = await asyncio.wait_for(operation(), timeout=config.timeout)
            except asyncio.TimeoutError:
                last_error = OperationTimeoutError(
                    f"Attempt {attempt} exceeded {config.timeout}s",
                    details={"attempt": attempt, "timeout": config.timeout},
                )
            except Exception as e:
                last_error = e
            else:
                self._record(context, "successes")
                if attempt > 1:
                    self.logger.info("Retry succeeded", attempt=attempt, context=context)
                return RetryResult(
                    success=True,
                    result=result,
                    attempts=attempts,
                    total_time=time.monotonic() - start_time,
                )

            if not is_retryable(last_error, config):
                self.logger.warning(
                    "Non-retryable error encountered",
                    attempt=attempt,
                    context=context,
                    error=str(last_error),
                )
                break

            if attempt == config.max_attempts:
                self.logger.error(
                    "All retry attempts exhausted",
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    context=context,
                    error=str(last_error),
                )
                break

            delay = calculate_delay(attempt, config)
            self.logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                delay=delay,
                context=context,
                error=str(last_error),
            )
            if on_retry is not None:
                on_retry(attempt, last_error)
            await asyncio.sleep(delay)

        self._record(context, "failures")

        if fallback is not None and config.fallback_enabled:
            return await self._run_fallback(fallback, config, context, attempts, start_time, last_error)

        return RetryResult(
            success=False,
            error=last_error,
            attempts=attempts,
            total_time=time.monotonic() - start_time,
        )

    async def _run_fallback(self, fallback, config, context, attempts, start_time, last_error) -> RetryResult:
        self.logger.info("Attempting fallback operation", context=context, error=str(last_error))
        self._record(context, "fallbacks")
        await asyncio.sleep(config.fallback_delay)

        try:
            fallback_result = await fallback()
        except Exception as fallback_error:
            self.logger.error("Fallback operation also failed", context=context, error=str(fallback_error))
            return RetryResult(
                success=False,
                error=fallback_error,
                attempts=attempts,
                total_time=time.monotonic() - start_time,
                fallback_used=True,
            )

        return RetryResult(
            success=True,
            result=fallback_result,
            attempts=attempts,
            total_time=time.monotonic() - start_time,
            fallback_used=True,
        )

    def _record(self, context: str, counter: str):
        stats = self.stats.setdefault(
            context, {"attempts": 0, "successes": 0, "failures": 0, "fallbacks": 0}
        )
        stats[counter] += 1

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        """Get retry statistics."""
        return {
            name: {
                **stats,
                "success_rate": stats["successes"] / max(1, stats["successes"] + stats["failures"])
            }
            for name, stats in self.stats.items()
        }
