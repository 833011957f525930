"""
Record types and validated option models for the federated memory core.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


@dataclass
class MemoryRecord:
    id: str
    owner_id: str
    content: str
    metadata: Dict[str, Any]
    embedding: Optional[List[float]]
    access_count: int
    last_accessed: datetime
    created_at: datetime
    updated_at: datetime
    score: Optional[float] = None
    """Similarity to the query when produced by a search"""
    module_id: Optional[str] = None
    """Owning module when produced by cross-module resolution"""

    @property
    def type(self) -> Optional[str]:
        return self.metadata.get("type")


@dataclass
class IndexEntry:
    owner_id: str
    module_id: str
    remote_memory_id: str
    compact_embedding: List[float]
    title: str
    summary: str
    keywords: List[str]
    access_count: int
    last_accessed: datetime
    created_at: datetime
    updated_at: datetime

    @property
    def key(self):
        return (self.owner_id, self.module_id, self.remote_memory_id)


@dataclass
class RouteCandidate:
    """Represents a ranked index hit, before resolution against its module."""

    module_id: str
    remote_memory_id: str
    score: float
    title: str = ""
    summary: str = ""
    last_accessed: Optional[datetime] = None


@dataclass
class MemoryRelationship:
    """Typed, weighted link between two indexed records of the same owner."""

    id: str
    owner_id: str
    source_module: str
    source_memory_id: str
    target_module: str
    target_memory_id: str
    relationship_type: str
    strength: float
    metadata: Dict[str, Any]
    created_at: datetime


@dataclass
class RelatedMemory:
    relationship: MemoryRelationship
    entry: IndexEntry


@dataclass
class ModuleRoute:
    """A module worth querying, with its mean similarity and the stored keywords the query mentions."""

    module_id: str
    confidence: float
    keywords: List[str] = field(default_factory=list)


@dataclass
class ModuleStats:
    total_memories: int
    average_access_count: float
    most_frequent_categories: List[str] = field(default_factory=list)
    last_accessed: Optional[datetime] = None


class SearchOptions(BaseModel):
    """Options for module-level vector search."""

    limit: int = Field(default=10, ge=1, le=1000)
    min_score: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    filters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('filters')
    @classmethod
    def filters_must_be_scalar_or_list(cls, v):
        for key, value in v.items():
            if isinstance(value, dict):
                raise ValueError(f"filter '{key}' must be a scalar or a list of scalars")
            if isinstance(value, (list, tuple)) and any(isinstance(item, (dict, list, tuple)) for item in value):
                raise ValueError(f"filter '{key}' list must contain only scalars")
        return v


class RouteOptions(BaseModel):
    """Options for cross-module routing through the central index."""

    limit: int = Field(default=10, ge=1, le=1000)
    min_score: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    module_ids: Optional[List[str]] = None


class IndexPayload(BaseModel):
    """Fields a module hands to the central index for one record."""

    model_config = ConfigDict(frozen=True)

    title: str
    summary: str
    compact_embedding: List[float]
    keywords: List[str] = Field(default_factory=list)

    @field_validator('compact_embedding')
    @classmethod
    def embedding_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('compact_embedding cannot be empty')
        return v


class MemoryUpdate(BaseModel):
    """Partial update applied by Module.update."""

    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator('content')
    @classmethod
    def content_must_not_be_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError('content cannot be blank')
        return v

    def is_empty(self) -> bool:
        return self.content is None and self.metadata is None
