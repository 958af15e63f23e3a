# identity/people/models.py
"""
ORM models for people, their clusters and the embeddings inside them.

These are *only* about identity:
- Person: "who is this human?" (possibly not known yet)
- PersonCluster: "one group of same-modality samples we believe is them"
- PersonEmbedding: "one face/voice vector we captured from a source file"

Ownership mirrors the foreign keys: a person owns its clusters outright,
while an embedding only points weakly at a cluster and survives its deletion.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    LargeBinary,
    String,
)

from identity.db import Base

CLUSTER_TYPES = ("face", "voice")


def gen_uuid() -> str:
    """Generate a random UUID as a string. Used for primary keys."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Person(Base):
    """
    A person the registry knows about.

    A person with neither display_name nor identity_source is a *pending*
    placeholder created by auto-clustering; it only lives as long as it owns
    at least one cluster.
    """

    __tablename__ = "person"

    # Primary key. We use a stringified UUID to stay DB-agnostic.
    id = Column(String, primary_key=True, default=gen_uuid)

    # Display name to show in UIs. Can be edited by the user.
    display_name = Column(String, nullable=True)

    # Opaque proof of identity (e.g. path to a contact card). Only its
    # presence matters: it is what makes a person "identified".
    identity_source = Column(String, nullable=True)

    avatar = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    @property
    def is_pending(self) -> bool:
        return self.identity_source is None

    @property
    def is_placeholder(self) -> bool:
        """True when nothing but owned clusters justifies keeping this person."""
        return not self.display_name and self.identity_source is None


class PersonCluster(Base):
    """
    A group of embeddings of one modality believed to be the same person.

    centroid is the running mean of the member vectors, re-normalized to unit
    length, packed as float32 bytes. sample_count must always equal the number
    of embeddings whose cluster_id points here.
    """

    __tablename__ = "person_cluster"

    id = Column(String, primary_key=True, default=gen_uuid)

    person_id = Column(
        String,
        ForeignKey("person.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # "face" or "voice"
    type = Column(String, nullable=False, index=True)

    centroid = Column(LargeBinary, nullable=True)

    sample_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class PersonEmbedding(Base):
    """
    A single stored face or voice embedding.

    This might be:
    - attached to a cluster (cluster_id not null)
    - or unassigned, e.g. after the user pulled it out of a wrong cluster.

    manual_assignment=True means a human placed (or removed) this embedding
    and auto-clustering must never move it again.
    """

    __tablename__ = "person_embedding"

    id = Column(String, primary_key=True, default=gen_uuid)

    cluster_id = Column(
        String,
        ForeignKey("person_cluster.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    type = Column(String, nullable=False)

    # Normalized vector bytes (we pack a float32 numpy array into this).
    vector = Column(LargeBinary, nullable=False)

    # Which file/recording this sample came from, e.g. "inbox/2024/call.m4a"
    source_path = Column(String, nullable=False, index=True)

    # Optional position inside the source.
    # Examples:
    #   {"start": 12.4, "end": 15.0}            (voice segment, seconds)
    #   {"x1": 120, "y1": 80, "x2": 220, "y2": 200}   (face bbox)
    source_offset = Column(JSON, nullable=True)

    quality = Column(Float, nullable=True)

    manual_assignment = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
