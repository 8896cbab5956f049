"""
Flow State Discovery Service

Samples flows from a store, trains the HMM engine, writes state labels back
and returns anomaly-scored state profiles.

Components:
- FlowStore: what the service needs from a flow store
- FlowDatabase: PostgreSQL implementation of FlowStore
- ModelCache: Redis cache for fitted models and scalers
- DiscoveryService: the end-to-end discovery workflow
"""

from .cache import ModelCache
from .database import FlowDatabase
from .models import DiscoveryConfig, DiscoveryResult
from .service import DiscoveryService
from .store import FlowStore

__all__ = [
    "DiscoveryConfig",
    "DiscoveryResult",
    "DiscoveryService",
    "FlowDatabase",
    "FlowStore",
    "ModelCache",
]
