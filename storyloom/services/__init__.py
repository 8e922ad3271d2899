"""
Storyloom Services Module
Model invocation, lens history persistence and tracing.
"""

from .lens_history import (
    InMemoryLensHistoryStore,
    LensHistory,
    LensHistoryStore,
    RedisLensHistoryStore,
    combo_key,
)
from .model_client import (
    MalformedResponse,
    ModelHTTPError,
    ModelInvocationError,
    ModelResponse,
    ModelTimeout,
    UnifiedModelClient,
)
from .tracing import TracingService

__all__ = [
    "InMemoryLensHistoryStore",
    "LensHistory",
    "LensHistoryStore",
    "RedisLensHistoryStore",
    "combo_key",
    "MalformedResponse",
    "ModelHTTPError",
    "ModelInvocationError",
    "ModelResponse",
    "ModelTimeout",
    "UnifiedModelClient",
    "TracingService",
]
