"""
Test helper functions and factory methods for the AEMaaCS client.
"""

import json
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Callable, Union

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from aem_shared.config import ClientConfig


class FakeClock:
    """Manually advanced clock usable wherever ``time.time`` is injected."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@dataclass
class TestRSAKey:
    """Throwaway RSA key pair in PEM form."""
    __test__ = False

    private_pem: str
    public_pem: str


def generate_rsa_key() -> TestRSAKey:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return TestRSAKey(private_pem=private_pem, public_pem=public_pem)


def token_response(access_token: str = "ims-token", expires_in: int = 3600) -> httpx.Response:
    """IMS token endpoint success body."""
    return httpx.Response(
        200,
        json={"access_token": access_token, "token_type": "bearer", "expires_in": expires_in},
    )


def json_response(payload: Any, status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload).encode("utf-8"),
                          headers={"content-type": "application/json", **(headers or {})})


ResponseSpec = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


@dataclass
class RecordingTransport:
    """Scripted ``httpx.MockTransport`` handler that records every request.

    Responses are consumed in order; the last one repeats once the script
    runs out. An exception in the script is raised instead of answering.
    """
    __test__ = False

    script: List[ResponseSpec]
    requests: List[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.script)) - 1
        spec = self.script[index]
        if isinstance(spec, Exception):
            raise spec
        if isinstance(spec, httpx.Response):
            # Fresh copy so a repeated entry can be served more than once
            return httpx.Response(spec.status_code, headers=spec.headers, content=spec.content)
        return spec(request)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class TestEnvironment:
    """Test environment configuration."""
    __test__ = False

    @staticmethod
    def get_client_config(**overrides) -> ClientConfig:
        values: Dict[str, Any] = {
            "service_name": "aem-client-test",
            "host": "author.example.com",
            "port": 443,
            "protocol": "https",
            "auth_type": "basic",
            "username": "admin",
            "password": "admin",
            "timeout": 5.0,
            "retry_attempts": 3,
            "cache_ttl": 300.0,
            "circuit_failure_threshold": 5,
            "circuit_recovery_timeout": 60.0,
        }
        values.update(overrides)
        return ClientConfig(_env_file=None, **values)
