"""
Adapters package for the gateway service.

Contains the HTTP client for the backing store. The adapter encapsulates:

- Base URL and service-credential headers (from configuration only)
- Error handling that maps transport failures to shared errors

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .store_client import StoreForwarder, StoreResponse

__all__ = [
    "StoreForwarder",
    "StoreResponse",
]
