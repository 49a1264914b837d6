"""
Request options and response envelope for orchestrated AEM calls.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from aem_shared.errors import AEMException, ErrorKind, OperationError, exception_from_error

T = TypeVar("T")


class CallKind(str, Enum):
    """Selects the retry preset for a call."""
    DEFAULT = "default"
    AEM = "aem"
    HTTP = "http"
    BULK = "bulk"
    CACHE = "cache"


class OperationContext(BaseModel):
    """Logical labels for logs, metrics and circuit breaker scoping."""

    model_config = ConfigDict(frozen=True)

    operation: Optional[str] = None
    resource: Optional[str] = None


class RequestOptions(BaseModel):
    """Per-call options. Durations are in seconds."""

    model_config = ConfigDict(frozen=True)

    timeout: Optional[float] = Field(default=None, gt=0)
    retries: Optional[int] = Field(default=None, ge=0)
    cache: bool = True
    cache_ttl: Optional[float] = Field(default=None, gt=0)
    circuit_breaker: bool = True
    context: OperationContext = Field(default_factory=OperationContext)
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Optional[Dict[str, Any]] = None
    kind: CallKind = CallKind.AEM
    deadline: Optional[float] = Field(default=None, gt=0)


class ResponseMetadata(BaseModel):
    """Bookkeeping attached to every envelope."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    duration: float = 0.0
    cached: bool = False
    attempts: int = 0
    fallback_used: bool = False


class OperationResponse(BaseModel, Generic[T]):
    """Uniform envelope returned by every orchestrated call."""

    success: bool
    data: Optional[T] = None
    error: Optional[OperationError] = None
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)

    @classmethod
    def ok(cls, data: Any, metadata: ResponseMetadata) -> "OperationResponse":
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: AEMException, metadata: ResponseMetadata) -> "OperationResponse":
        return cls(success=False, error=error.to_error(), metadata=metadata)

    def unwrap(self) -> Any:
        """Return the payload, or raise the envelope's error as an exception."""
        if self.success:
            return self.data
        error = self.error or OperationError(code=ErrorKind.UNKNOWN, message="Unknown failure")
        raise exception_from_error(error)
