from .job import Job, JobStatus, JobType, JobQueueStatus, ConflictResolution
from .cache_entry import CacheEntry, page_cache_key, thumbnail_cache_key

__all__ = [
    "Job",
    "JobStatus",
    "JobType",
    "JobQueueStatus",
    "ConflictResolution",
    "CacheEntry",
    "page_cache_key",
    "thumbnail_cache_key",
]
