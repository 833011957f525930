"""
Error taxonomy for the federated memory core.

Semantic faults (provider failures, dimension mismatches) propagate to the
caller. Infrastructure faults (cache outages, stale index pointers) are
absorbed by the lowest layer that can degrade safely.
"""

from typing import Optional


class FederatedMemoryError(Exception):
    """Base class for all core errors."""
    pass


class EmbeddingGenerationError(FederatedMemoryError):
    """The embedding provider failed (timeout, rate limit, malformed response)."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class DimensionMismatchError(FederatedMemoryError, ValueError):
    """Two vectors of different lengths were compared."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Vector dimension mismatch: {expected} != {actual}")
        self.expected = expected
        self.actual = actual


class CacheUnavailable(FederatedMemoryError):
    """Cache backend failure. Never escapes the embedding cache."""
    pass


class RecordNotFound(FederatedMemoryError):
    """Raised by the storage layer; modules surface it as None/False."""

    def __init__(self, table: str, record_id: str, owner_id: str):
        super().__init__(f"Record {record_id} not found in {table} for owner {owner_id}")
        self.table = table
        self.record_id = record_id
        self.owner_id = owner_id


class DanglingIndexEntry(FederatedMemoryError):
    """An index entry points at a record that no longer resolves."""

    def __init__(self, module_id: str, remote_memory_id: str, reason: str = "record missing"):
        super().__init__(f"Dangling index entry {module_id}/{remote_memory_id}: {reason}")
        self.module_id = module_id
        self.remote_memory_id = remote_memory_id
        self.reason = reason


class ModuleNotRegisteredError(FederatedMemoryError, KeyError):
    """No module is registered under the requested id."""

    def __init__(self, module_id: str):
        super().__init__(module_id)
        self.module_id = module_id

    def __str__(self):
        return f"Module '{self.module_id}' is not registered"


class ModuleError(FederatedMemoryError):
    """A module storage operation failed for a reason other than the provider."""

    def __init__(self, module_id: str, code: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"[{module_id}] {code}: {message}")
        self.module_id = module_id
        self.code = code
        self.cause = cause


class ConfigurationError(FederatedMemoryError):
    """Invalid runtime configuration."""
    pass
