"""
Resilient HTTP client for AEM as a Cloud Service.

Every call follows the same pipeline: cache lookup (reads only), auth
headers, then the transport attempt guarded by a circuit breaker and driven
by the retry executor. Callers always get an ``OperationResponse`` back.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, Any, Optional, Callable, Awaitable

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from aem_shared.circuit_breaker import CircuitBreakerManager
from aem_shared.config import ClientConfig, get_config
from aem_shared.errors import (
    AEMException,
    AuthenticationError,
    OperationTimeoutError,
    map_http_status,
    map_transport_error,
)
from aem_shared.logging import (
    configure_logging,
    get_logger,
    request_id_var,
    set_request_id,
    set_operation_context,
    reset_context,
)
from aem_shared.metrics import MetricsCollector, PerformanceMonitor
from aem_shared.retry import RetryConfig, RetryExecutor
from .auth import AuthTokenManager
from .caching import CacheBackend, create_cache, generate_cache_key
from .models import OperationResponse, RequestOptions, ResponseMetadata

SUPPORTED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD"})

# Slack the retry executor allows beyond the per-attempt transport timeout.
ATTEMPT_TIMEOUT_GRACE = 0.5

Fallback = Callable[[], Awaitable[Any]]

tracer = trace.get_tracer(__name__)


@dataclass
class _AttemptLedger:
    attempts: int = 0


class AEMHttpClient:
    """Orchestrates authenticated, cached, circuit-broken and retried AEM calls."""

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        cache: Optional[CacheBackend] = None,
        token_manager: Optional[AuthTokenManager] = None,
        circuit_breakers: Optional[CircuitBreakerManager] = None,
        retry_executor: Optional[RetryExecutor] = None,
        metrics: Optional[MetricsCollector] = None,
        performance: Optional[PerformanceMonitor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        enable_caching: Optional[bool] = None,
        enable_circuit_breaker: bool = True,
        enable_retry: bool = True,
    ):
        self.config = config or get_config()
        self.logger = get_logger("aem.client")

        self.enable_caching = self.config.cache_enabled if enable_caching is None else enable_caching
        self.enable_circuit_breaker = enable_circuit_breaker
        self.enable_retry = enable_retry

        if self.enable_caching:
            self.cache = cache if cache is not None else create_cache(self.config)
        else:
            self.cache = None

        self.token_manager = token_manager or AuthTokenManager(
            self.config.credentials(),
            safety_margin=self.config.token_safety_margin,
            timeout=self.config.timeout,
        )
        self.circuit_breakers = circuit_breakers or CircuitBreakerManager(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_timeout,
        )
        self.retry_executor = retry_executor or RetryExecutor()
        self.metrics = metrics or MetricsCollector(self.config.service_name)
        self.performance = performance or PerformanceMonitor()

        self._http = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            limits=httpx.Limits(
                max_connections=self.config.max_connections,
                max_keepalive_connections=self.config.max_keepalive_connections,
            ),
            headers={"Accept": "application/json", "User-Agent": f"{self.config.service_name}/1.0.0"},
            transport=transport,
        )
        self._closed = False

    # Public operations

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        options: Optional[RequestOptions] = None,
        fallback: Optional[Fallback] = None,
    ) -> OperationResponse:
        options = options or RequestOptions()
        if params:
            options = options.model_copy(update={"params": {**(options.params or {}), **params}})
        return await self.request("GET", path, options=options, fallback=fallback)

    async def post(self, path: str, data: Any = None, options: Optional[RequestOptions] = None,
                   fallback: Optional[Fallback] = None) -> OperationResponse:
        return await self.request("POST", path, data, options, fallback)

    async def put(self, path: str, data: Any = None, options: Optional[RequestOptions] = None,
                  fallback: Optional[Fallback] = None) -> OperationResponse:
        return await self.request("PUT", path, data, options, fallback)

    async def delete(self, path: str, options: Optional[RequestOptions] = None,
                     fallback: Optional[Fallback] = None) -> OperationResponse:
        return await self.request("DELETE", path, None, options, fallback)

    async def upload(
        self,
        path: str,
        content: bytes,
        metadata: Optional[Dict[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> OperationResponse:
        """POST ``content`` as a multipart file part.

        ``filename`` and ``mimeType`` in ``metadata`` describe the file part;
        every other entry is sent as a plain form field.
        """
        metadata = dict(metadata or {})
        filename = metadata.pop("filename", "upload")
        mime_type = metadata.pop("mimeType", "application/octet-stream")
        body = {
            "files": {"file": (filename, content, mime_type)},
            "data": {key: str(value) for key, value in metadata.items()},
        }
        return await self._execute("POST", path, body, options or RequestOptions(), None)

    async def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        options: Optional[RequestOptions] = None,
        fallback: Optional[Fallback] = None,
    ) -> OperationResponse:
        """Run one orchestrated call and return its envelope."""
        return await self._execute(method, path, self._body_kwargs(payload), options or RequestOptions(), fallback)

    # Pipeline

    async def _execute(
        self,
        method: str,
        path: str,
        body: Dict[str, Any],
        options: RequestOptions,
        fallback: Optional[Fallback],
    ) -> OperationResponse:
        method = method.upper()
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")
        if self._closed:
            raise RuntimeError("AEMHttpClient is closed")

        operation = options.context.operation or method.lower()
        metadata = ResponseMetadata()
        ledger = _AttemptLedger()
        start_time = time.monotonic()

        context_tokens = [(request_id_var, set_request_id(metadata.request_id))]
        context_tokens.extend(set_operation_context(options.context.operation, options.context.resource))
        timer = self.performance.start_operation(metadata.request_id, operation)

        self.logger.info(
            "aem_operation_started",
            method=method,
            path=path,
            resource=options.context.resource,
        )

        try:
            with tracer.start_as_current_span(
                f"aem.{method.lower()}",
                attributes={"http.method": method, "aem.path": path, "aem.operation": operation},
            ) as span:
                if options.deadline is not None:
                    response = await self._run_with_deadline(
                        method, path, body, options, fallback, ledger, metadata, operation
                    )
                else:
                    response = await self._orchestrate(
                        method, path, body, options, fallback, ledger, metadata, operation
                    )

                span.set_attribute("aem.cached", response.metadata.cached)
                span.set_attribute("aem.attempts", response.metadata.attempts)
                if not response.success:
                    span.set_status(Status(StatusCode.ERROR, response.error.message))

            duration = time.monotonic() - start_time
            response.metadata.duration = duration
            timer.end(response.success)

            self.metrics.record_request(method, operation, response.success, duration)
            self.metrics.record_transport_attempts(operation, ledger.attempts)
            if not response.success:
                self.metrics.record_error(response.error.code.value)

            self.logger.info(
                "aem_operation_completed",
                method=method,
                path=path,
                success=response.success,
                duration=duration,
                cached=response.metadata.cached,
                attempts=response.metadata.attempts,
                fallback_used=response.metadata.fallback_used,
                error_code=response.error.code.value if response.error else None,
            )
            return response
        finally:
            reset_context(context_tokens)

    async def _run_with_deadline(self, method, path, body, options, fallback, ledger, metadata, operation):
        try:
            return await asyncio.wait_for(
                self._orchestrate(method, path, body, options, fallback, ledger, metadata, operation),
                timeout=options.deadline,
            )
        except asyncio.TimeoutError:
            self.logger.warning("Operation deadline exceeded", deadline=options.deadline, path=path)
            metadata.attempts = ledger.attempts
            error = OperationTimeoutError(
                f"Operation deadline of {options.deadline}s exceeded",
                details={"deadline": options.deadline, "attempts": ledger.attempts},
            )
            return OperationResponse.fail(error, metadata)

    async def _orchestrate(
        self,
        method: str,
        path: str,
        body: Dict[str, Any],
        options: RequestOptions,
        fallback: Optional[Fallback],
        ledger: _AttemptLedger,
        metadata: ResponseMetadata,
        operation: str,
    ) -> OperationResponse:
        cache_key = None
        if method == "GET" and options.cache and self.cache is not None:
            cache_key = generate_cache_key(method, path, options.params)
            cached = await self._cache_lookup(cache_key)
            if cached is not None:
                metadata.cached = True
                return OperationResponse.ok(cached, metadata)

        try:
            auth_headers = await self.token_manager.get_auth_headers()
        except Exception as e:
            error = e if isinstance(e, AEMException) else AuthenticationError(
                "Failed to obtain credentials", details={"error": str(e)}
            )
            self.logger.error("Authentication failed before transport", error=error.message)
            return OperationResponse.fail(error, metadata)

        attempt = self._build_attempt(method, path, body, options, auth_headers, ledger, operation)

        if self.enable_circuit_breaker and options.circuit_breaker:
            breaker = self.circuit_breakers.get_circuit_breaker(
                options.context.operation or self.config.default_circuit_name
            )

            async def guarded():
                try:
                    return await breaker.call(attempt)
                finally:
                    self.metrics.record_circuit_state(breaker.name, breaker.state.value)
        else:
            guarded = attempt

        result = await self.retry_executor.execute(
            guarded,
            config=self._retry_config(options),
            fallback=fallback,
            context=operation,
        )

        metadata.attempts = ledger.attempts
        metadata.fallback_used = result.fallback_used
        if result.fallback_used:
            self.metrics.record_fallback(operation, result.success)

        if result.success:
            if cache_key is not None and not result.fallback_used and result.result is not None:
                await self._cache_store(cache_key, result.result, options.cache_ttl)
            return OperationResponse.ok(result.result, metadata)

        error = map_transport_error(result.error, {"method": method, "path": path})
        return OperationResponse.fail(error, metadata)

    def _build_attempt(self, method, path, body, options, auth_headers, ledger, operation):
        timeout = self._attempt_timeout(options)
        headers = {**options.headers, **auth_headers}
        url = path if path.startswith("/") else f"/{path}"
        error_context = {"method": method, "path": path, "operation": operation}

        async def send():
            ledger.attempts += 1
            try:
                response = await self._http.request(
                    method, url, params=options.params, headers=headers, timeout=timeout, **body
                )
            except httpx.HTTPError as e:
                raise map_transport_error(e, error_context) from e

            if response.status_code == 401:
                self.token_manager.invalidate()
            if response.is_error:
                raise map_http_status(response, error_context)
            return self._parse_body(response)

        async def attempt():
            try:
                return await asyncio.wait_for(send(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise OperationTimeoutError(
                    f"Attempt exceeded {timeout}s",
                    details={"timeout": timeout, **error_context},
                ) from e

        return attempt

    def _attempt_timeout(self, options: RequestOptions) -> float:
        return options.timeout if options.timeout is not None else self.config.timeout

    def _retry_config(self, options: RequestOptions) -> RetryConfig:
        if not self.enable_retry:
            attempts = 1
        elif options.retries is not None:
            attempts = max(1, options.retries)
        else:
            attempts = max(1, self.config.retry_attempts)

        return RetryConfig.for_kind(options.kind.value).with_overrides(
            max_attempts=attempts,
            timeout=self._attempt_timeout(options) + ATTEMPT_TIMEOUT_GRACE,
        )

    async def _cache_lookup(self, key: str) -> Optional[Any]:
        try:
            value = await self.cache.get(key)
        except Exception as e:
            self.logger.error("Cache lookup failed, continuing without cache", key=key, error=str(e))
            return None
        self.metrics.record_cache_event(value is not None)
        return value

    async def _cache_store(self, key: str, value: Any, ttl: Optional[float]):
        try:
            await self.cache.set(key, value, ttl)
        except Exception as e:
            self.logger.error("Cache populate failed", key=key, error=str(e))

    @staticmethod
    def _body_kwargs(payload: Any) -> Dict[str, Any]:
        if payload is None:
            return {}
        if isinstance(payload, (bytes, bytearray, str)):
            return {"content": payload}
        return {"json": payload}

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except ValueError:
                return response.text
        if not content_type or content_type.startswith("text/"):
            return response.text
        return response.content

    # Administration

    async def get_stats(self) -> Dict[str, Any]:
        """Snapshot of breaker, cache, retry and performance statistics."""
        return {
            "circuit_breakers": self.circuit_breakers.get_all_states(),
            "cache": await self.cache.get_stats() if self.cache is not None else None,
            "retry": self.retry_executor.get_stats(),
            "performance": self.performance.get_metrics(),
        }

    async def clear_cache(self, pattern: Optional[str] = None) -> int:
        """Invalidate cached reads matching ``pattern``, or everything."""
        if self.cache is None:
            return 0
        if pattern:
            return await self.cache.invalidate_pattern(pattern)
        size = (await self.cache.get_stats()).get("size") or 0
        await self.cache.clear()
        return size

    def reset_circuit_breaker(self, name: Optional[str] = None) -> bool:
        if name is None:
            self.circuit_breakers.reset_all()
            return True
        return self.circuit_breakers.reset(name)

    async def start(self):
        """Start background work such as the cache expiry sweep."""
        if self.cache is not None:
            await self.cache.start()

    async def close(self):
        if self._closed:
            return
        self._closed = True
        if self.cache is not None:
            await self.cache.close()
        await self.token_manager.close()
        await self._http.aclose()
        self.logger.info("AEM client closed")

    async def __aenter__(self) -> "AEMHttpClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


def create_client(config: Optional[ClientConfig] = None, **kwargs) -> AEMHttpClient:
    """Build a client from configuration, configuring logging on the way."""
    config = config or get_config()
    configure_logging(config.service_name, config.log_level, config.log_format)
    return AEMHttpClient(config, **kwargs)
