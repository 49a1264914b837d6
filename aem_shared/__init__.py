"""
Shared utilities for the AEMaaCS resilient client.

This package aggregates the cross-cutting building blocks used by the
client package:

- config: Client configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics and per-operation performance counters
- errors: Canonical error taxonomy and HTTP/transport mapping
- retry: Retry executor with presets and fallback
- circuit_breaker: Per-dependency failure isolation

Do not import from aem_client into aem_shared.
"""
