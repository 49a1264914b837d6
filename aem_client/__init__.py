"""
Resilient asynchronous client for AEM as a Cloud Service HTTP APIs.
"""
