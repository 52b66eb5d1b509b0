"""
Domain utilities for the gateway service.

Request processing that composes rewriting and forwarding but does not
belong to adapters or transport-specific layers.
"""

from .batch import BatchForwarder, BatchItem, BatchResult, parse_batch_payload

__all__ = [
    "BatchForwarder",
    "BatchItem",
    "BatchResult",
    "parse_batch_payload",
]
