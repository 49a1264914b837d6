"""
Shared configuration management for the AEMaaCS client.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CredentialType(str, Enum):
    """Supported authentication schemes."""
    BASIC = "basic"
    OAUTH = "oauth"
    SERVICE_ACCOUNT = "service-account"


class CacheStrategy(str, Enum):
    """Eviction policy for the in-process cache."""
    LRU = "lru"
    LFU = "lfu"
    TTL = "ttl"


class AEMCredentials(BaseModel):
    """Validated credential set for one AEM environment."""

    type: CredentialType
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    private_key: Optional[str] = None
    ims_host: str = "https://ims-na1.adobelogin.com"
    scope: str = "openid,AdobeID,read_organizations,additional_info.projectedProductContext"

    @model_validator(mode="after")
    def _check_required_fields(self) -> "AEMCredentials":
        if self.type == CredentialType.BASIC:
            if not self.username or not self.password:
                raise ValueError("basic authentication requires username and password")
        else:
            if not self.client_id or not self.client_secret:
                raise ValueError(f"{self.type.value} authentication requires client_id and client_secret")
        if self.type == CredentialType.SERVICE_ACCOUNT and not self.private_key:
            raise ValueError("service-account authentication requires a private key")
        return self


class ClientConfig(BaseSettings):
    """Client configuration loaded from ``AEM_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AEM_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Service identity
    service_name: str = Field(default="aem-client")
    log_level: str = Field(default="info")
    log_format: str = Field(default="json")

    # Remote AEM instance
    host: str = Field(default="localhost")
    port: int = Field(default=443, ge=1, le=65535)
    protocol: str = Field(default="https", pattern="^https?$")
    base_path: str = Field(default="")
    timeout: float = Field(default=30.0, gt=0)
    retry_attempts: int = Field(default=3, ge=0, le=10)
    max_connections: int = Field(default=10, gt=0)
    max_keepalive_connections: int = Field(default=5, ge=0)
    health_check_path: str = Field(default="/system/health")

    # Authentication
    auth_type: CredentialType = Field(default=CredentialType.BASIC)
    username: Optional[str] = Field(default=None)
    password: Optional[str] = Field(default=None)
    client_id: Optional[str] = Field(default=None)
    client_secret: Optional[str] = Field(default=None)
    private_key: Optional[str] = Field(default=None)
    ims_host: str = Field(default="https://ims-na1.adobelogin.com")
    scope: str = Field(default="openid,AdobeID,read_organizations,additional_info.projectedProductContext")
    token_safety_margin: float = Field(default=60.0, ge=0)

    # Cache
    cache_enabled: bool = Field(default=True)
    cache_ttl: float = Field(default=300.0, gt=0)
    cache_max_size: int = Field(default=1000, gt=0)
    cache_strategy: CacheStrategy = Field(default=CacheStrategy.LRU)
    cache_sweep_interval: float = Field(default=300.0, gt=0)
    cache_redis_url: Optional[str] = Field(default=None)

    # Circuit breaker
    circuit_failure_threshold: int = Field(default=5, gt=0)
    circuit_recovery_timeout: float = Field(default=60.0, gt=0)

    @property
    def base_url(self) -> str:
        """Root URL every request path is joined onto."""
        return f"{self.protocol}://{self.host}:{self.port}{self.base_path.rstrip('/')}"

    @property
    def default_circuit_name(self) -> str:
        return f"aem-{self.host}:{self.port}"

    def credentials(self) -> AEMCredentials:
        """Build and validate the credential set for the configured scheme."""
        return AEMCredentials(
            type=self.auth_type,
            username=self.username,
            password=self.password,
            client_id=self.client_id,
            client_secret=self.client_secret,
            private_key=self.private_key,
            ims_host=self.ims_host,
            scope=self.scope,
        )


def get_config(**overrides) -> ClientConfig:
    """Get client configuration, optionally overriding environment values."""
    return ClientConfig(**overrides)
