"""
Tenant-isolation rewriting for gateway requests.
"""

from .query_rewriter import QueryRewriter, RequestEnvelope, SafeRequest, rewrite

__all__ = [
    "QueryRewriter",
    "RequestEnvelope",
    "SafeRequest",
    "rewrite",
]
