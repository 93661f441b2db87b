"""
Pipeline Services
Chunk storage, leases, progress fan-out, working area and read queries.
"""

from .chunk_store import ChunkStore, LocalChunkStore
from .lease_service import (
    Lease,
    LeaseService,
    LeaseHeartbeat,
    RedisLeaseService,
    InMemoryLeaseService,
    chunk_lease_key,
)
from .progress_publisher import (
    ProgressPublisher,
    InMemoryProgressPublisher,
    RedisProgressPublisher,
    RedisProgressSubscriber,
    Subscription,
)
from .working_area import WorkingArea
from .upload_query import UploadQueryService

__all__ = [
    "ChunkStore",
    "LocalChunkStore",
    "Lease",
    "LeaseService",
    "LeaseHeartbeat",
    "RedisLeaseService",
    "InMemoryLeaseService",
    "chunk_lease_key",
    "ProgressPublisher",
    "InMemoryProgressPublisher",
    "RedisProgressPublisher",
    "RedisProgressSubscriber",
    "Subscription",
    "WorkingArea",
    "UploadQueryService",
]
