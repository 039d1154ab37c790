"""Provider implementations.

Adapters are imported lazily by the registry so optional transports (boto3)
load only when their provider is used.
"""

from .base import HTTPProvider, Provider

__all__ = ["HTTPProvider", "Provider"]
