"""
AEM client application package.

The client fronts every outbound call to an AEM as a Cloud Service
instance, adding:
- Authentication: basic, OAuth client-credentials or service-account JWT
- Caching: in-process or Redis-backed read cache
- Circuit-breaking and retries for resilient remote calls
- A uniform response envelope for callers

Structure:
- app.client: the request orchestrator (AEMHttpClient).
- app.models: request options and response envelope.
- app.auth: token manager.
- app.caching: cache backends and key derivation.
- app.bulk: batched execution with bounded concurrency.
- app.health: health reporting built on client statistics.
"""
