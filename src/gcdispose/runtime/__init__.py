from .disposal_queue import DisposalQueue, get_default_queue, reset_default_queue
from .drainer import DisposalDrainer, get_default_drainer, shutdown_default_drainer
from .reference import InvalidOwnerError, ReferenceStrength, TrackingReference
from .resources import ResourceScope, TrackType, maybe_scope, require_scope, track
from .soft_retention import (
    SoftRetentionPool,
    get_available_memory_mb,
    get_soft_retention_pool,
    reset_soft_retention_pool,
)

__all__ = [
    "DisposalDrainer",
    "DisposalQueue",
    "InvalidOwnerError",
    "ReferenceStrength",
    "ResourceScope",
    "SoftRetentionPool",
    "TrackType",
    "TrackingReference",
    "get_available_memory_mb",
    "get_default_drainer",
    "get_default_queue",
    "get_soft_retention_pool",
    "maybe_scope",
    "require_scope",
    "reset_default_queue",
    "reset_soft_retention_pool",
    "shutdown_default_drainer",
    "track",
]
