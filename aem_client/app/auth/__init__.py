"""
Authentication for outbound AEM requests.
"""

from .token_manager import AuthTokenManager, Token

__all__ = ["AuthTokenManager", "Token"]
