"""Tracking Context - read/write access tracking over live objects.

This bounded context manages:
- Transparent dict/list proxies reporting reads and writes as dot-paths
- Immutable AccessPattern snapshots
- Token-keyed tracker side table
- Request-scoped tracker lifecycle (dispose on every exit path)
"""

from .value_objects import AccessPattern, Mutation
from .services import (
    AccessTracker,
    TrackedDict,
    TrackedList,
    is_tracked,
    tracked_path,
    tracker_of,
    unwrap,
)
from .aggregates import RequestContext, TrackerTable

__all__ = [
    "AccessPattern",
    "Mutation",
    "AccessTracker",
    "TrackedDict",
    "TrackedList",
    "is_tracked",
    "tracked_path",
    "tracker_of",
    "unwrap",
    "RequestContext",
    "TrackerTable",
]
