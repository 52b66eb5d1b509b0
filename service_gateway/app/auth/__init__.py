"""
Authentication helpers for the tenant gateway.
"""

from .token_authenticator import Principal, TokenAuthenticator, extract_bearer_token

__all__ = [
    "Principal",
    "TokenAuthenticator",
    "extract_bearer_token",
]
