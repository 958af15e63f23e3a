# identity/people/schemas.py
"""
Pydantic schemas for registry input and output.

Every registry method returns these instead of ORM objects, so callers never
hold rows bound to a closed session. Vectors leave the registry as plain
float lists.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, field_validator

from identity.people.vectors import unpack_vector

ClusterType = Literal["face", "voice"]


def _unpack_if_bytes(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return unpack_vector(bytes(value)).tolist()
    return value


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

class EmbeddingIn(BaseModel):
    """One observed sample handed over by the enrichment pipeline."""

    vector: List[float]
    type: ClusterType
    source_path: str
    source_offset: Optional[Dict[str, Any]] = None
    quality: Optional[float] = None
    manual_assignment: bool = False

    class Config:
        allow_inf_nan = False

    @field_validator("vector", mode="before")
    @classmethod
    def coerce_vector(cls, value: Any) -> Any:
        # numpy arrays arrive straight from the extractors
        if hasattr(value, "tolist"):
            value = value.tolist()
        return value

    @field_validator("vector")
    @classmethod
    def vector_has_direction(cls, value: List[float]) -> List[float]:
        if not value:
            raise ValueError("vector must not be empty")
        # A zero vector cannot be normalized to unit length
        if not any(value):
            raise ValueError("vector must not be all zeros")
        return value


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

class PersonOut(BaseModel):
    id: str
    display_name: Optional[str]
    identity_source: Optional[str]
    avatar: Optional[str]
    is_pending: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PersonWithCounts(BaseModel):
    person: PersonOut
    face_cluster_count: int
    voice_cluster_count: int
    embedding_count: int


class ClusterOut(BaseModel):
    id: str
    person_id: str
    type: ClusterType
    centroid: Optional[List[float]]
    sample_count: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

    @field_validator("centroid", mode="before")
    @classmethod
    def unpack_centroid(cls, value: Any) -> Any:
        return _unpack_if_bytes(value)


class EmbeddingOut(BaseModel):
    id: str
    cluster_id: Optional[str]
    type: ClusterType
    vector: List[float]
    source_path: str
    source_offset: Optional[Dict[str, Any]]
    quality: Optional[float]
    manual_assignment: bool
    created_at: datetime

    class Config:
        from_attributes = True

    @field_validator("vector", mode="before")
    @classmethod
    def unpack_vector_bytes(cls, value: Any) -> Any:
        return _unpack_if_bytes(value)


class IngestResult(BaseModel):
    embedding: EmbeddingOut
    cluster: ClusterOut
    person: PersonOut
    is_new_person: bool
    similarity: Optional[float] = None


class AssignResult(BaseModel):
    embedding: EmbeddingOut
    cluster: ClusterOut


class SourceDeletionResult(BaseModel):
    source_path: str
    deleted_embeddings: int
    updated_cluster_ids: List[str] = []
    deleted_cluster_ids: List[str] = []
    deleted_person_ids: List[str] = []
