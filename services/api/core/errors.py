"""
Domain errors raised by the sync / cache core.

Routers translate these into HTTP status codes; the core itself never
raises HTTPException except from core.validation.
"""


class DocLibError(Exception):
    """Base class for all doclib-sync errors."""


class SyncError(DocLibError):
    """A delta sync or push could not be completed."""


class ManifestChecksumError(SyncError):
    def __init__(self, expected: str, actual: str):
        super().__init__(f"Manifest checksum mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class RemoteUnavailableError(SyncError):
    """The remote API could not be reached (offline, timeout, DNS...)."""


class CacheError(DocLibError):
    """Writing to or reading from the page cache failed."""


class PageRenderingError(DocLibError):
    def __init__(self, message: str, doc_id: str | None = None, page_number: int | None = None):
        super().__init__(message)
        self.doc_id = doc_id
        self.page_number = page_number

    def __str__(self) -> str:
        base = super().__str__()
        if self.doc_id is not None:
            return f"PageRenderingError: {base} (doc={self.doc_id}, page={self.page_number})"
        return f"PageRenderingError: {base}"


class JobNotFoundError(DocLibError):
    pass


class EntityNotFoundError(DocLibError):
    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id
