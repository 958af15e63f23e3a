# identity/people/store.py
"""
Persistence functions for Person, PersonCluster and PersonEmbedding.

Plain functions over a SQLAlchemy Session. They flush so that ids and
follow-up queries see the writes, but never commit: the caller (the registry)
owns the transaction.

Objects reference each other by id only; there are no ORM relationships to
keep in sync after bulk updates.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np
from sqlalchemy import func, select
from sqlalchemy.orm import Query, Session

from identity.people.models import Person, PersonCluster, PersonEmbedding, utcnow
from identity.people.vectors import VectorLike, pack_vector, unpack_vector

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# People
# ---------------------------------------------------------------------------

def create_person(
    db: Session,
    display_name: str | None = None,
    identity_source: str | None = None,
    avatar: str | None = None,
    person_id: str | None = None,
) -> Person:
    """Create a new Person record (identified or pending)."""
    person = Person(
        display_name=display_name,
        identity_source=identity_source,
        avatar=avatar,
    )
    if person_id is not None:
        person.id = person_id

    db.add(person)
    db.flush()  # assign person.id

    logger.info("created person id=%s display_name=%r", person.id, display_name)
    return person


def get_person(db: Session, person_id: str) -> Optional[Person]:
    return db.get(Person, person_id)


def update_person(db: Session, person: Person, updates: Dict[str, Any]) -> Person:
    """Apply only the given keys of display_name / identity_source / avatar."""
    for key in ("display_name", "identity_source", "avatar"):
        if key in updates:
            setattr(person, key, updates[key])
    person.updated_at = utcnow()
    db.flush()

    logger.info("updated person id=%s fields=%s", person.id, sorted(updates))
    return person


def delete_person(db: Session, person: Person) -> None:
    """
    Delete a person after deleting the clusters it owns.

    Embeddings of those clusters become unassigned, not deleted.
    """
    for cluster in list_clusters_for_person(db, person.id):
        delete_cluster(db, cluster)

    db.delete(person)
    db.flush()
    logger.info("deleted person id=%s", person.id)


def _filter_people(query: Query, pending_only: bool, identified_only: bool) -> Query:
    if pending_only:
        return query.filter(Person.identity_source.is_(None))
    if identified_only:
        return query.filter(Person.identity_source.isnot(None))
    return query


def _page(query: Query, limit: Optional[int], offset: Optional[int]) -> Query:
    if limit is not None:
        query = query.limit(limit)
    if offset:
        query = query.offset(offset)
    return query


def _people_order():
    # Identified first, then by name, newest first among equals.
    return (
        Person.identity_source.is_(None),
        Person.display_name.asc(),
        Person.created_at.desc(),
    )


def list_people(
    db: Session,
    pending_only: bool = False,
    identified_only: bool = False,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> List[Person]:
    query = _filter_people(db.query(Person), pending_only, identified_only)
    query = query.order_by(*_people_order())
    return _page(query, limit, offset).all()


def count_people(
    db: Session,
    pending_only: bool = False,
    identified_only: bool = False,
) -> int:
    query = _filter_people(db.query(func.count(Person.id)), pending_only, identified_only)
    return query.scalar() or 0


def list_people_with_counts(
    db: Session,
    pending_only: bool = False,
    identified_only: bool = False,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    People plus per-person face/voice cluster counts and embedding count.

    Returns a list of dicts:
        {"person": Person, "face_cluster_count": int,
         "voice_cluster_count": int, "embedding_count": int}
    """

    def cluster_count(cluster_type: str):
        return (
            select(func.count(PersonCluster.id))
            .where(PersonCluster.person_id == Person.id, PersonCluster.type == cluster_type)
            .correlate(Person)
            .scalar_subquery()
        )

    embedding_count = (
        select(func.count(PersonEmbedding.id))
        .join(PersonCluster, PersonEmbedding.cluster_id == PersonCluster.id)
        .where(PersonCluster.person_id == Person.id)
        .correlate(Person)
        .scalar_subquery()
    )

    query = db.query(
        Person,
        cluster_count("face"),
        cluster_count("voice"),
        embedding_count,
    )
    query = _filter_people(query, pending_only, identified_only)
    query = query.order_by(*_people_order())

    return [
        {
            "person": person,
            "face_cluster_count": face_count or 0,
            "voice_cluster_count": voice_count or 0,
            "embedding_count": emb_count or 0,
        }
        for person, face_count, voice_count, emb_count in _page(query, limit, offset).all()
    ]


# ---------------------------------------------------------------------------
# Clusters
# ---------------------------------------------------------------------------

def create_cluster(
    db: Session,
    person_id: str,
    cluster_type: str,
    centroid: Optional[VectorLike] = None,
    sample_count: int = 0,
) -> PersonCluster:
    cluster = PersonCluster(
        person_id=person_id,
        type=cluster_type,
        centroid=pack_vector(centroid) if centroid is not None else None,
        sample_count=sample_count,
    )
    db.add(cluster)
    db.flush()

    logger.info("created cluster id=%s person_id=%s type=%s", cluster.id, person_id, cluster_type)
    return cluster


def get_cluster(db: Session, cluster_id: str) -> Optional[PersonCluster]:
    return db.get(PersonCluster, cluster_id)


def cluster_centroid(cluster: PersonCluster) -> Optional[np.ndarray]:
    return unpack_vector(cluster.centroid) if cluster.centroid is not None else None


def list_clusters_for_person(
    db: Session,
    person_id: str,
    cluster_type: str | None = None,
) -> List[PersonCluster]:
    query = db.query(PersonCluster).filter(PersonCluster.person_id == person_id)
    if cluster_type:
        query = query.filter(PersonCluster.type == cluster_type)
    return query.order_by(PersonCluster.created_at.asc(), PersonCluster.id.asc()).all()


def count_clusters_for_person(db: Session, person_id: str) -> int:
    return (
        db.query(func.count(PersonCluster.id))
        .filter(PersonCluster.person_id == person_id)
        .scalar()
        or 0
    )


def list_clusters_with_centroid(db: Session, cluster_type: str) -> List[PersonCluster]:
    """All matchable clusters of one type, in a stable (created_at, id) order."""
    return (
        db.query(PersonCluster)
        .filter(PersonCluster.type == cluster_type, PersonCluster.centroid.isnot(None))
        .order_by(PersonCluster.created_at.asc(), PersonCluster.id.asc())
        .all()
    )


def list_all_clusters(db: Session) -> List[PersonCluster]:
    return db.query(PersonCluster).order_by(PersonCluster.created_at.asc(), PersonCluster.id.asc()).all()


def update_cluster(
    db: Session,
    cluster: PersonCluster,
    centroid: Optional[VectorLike],
    sample_count: int,
) -> PersonCluster:
    cluster.centroid = pack_vector(centroid) if centroid is not None else None
    cluster.sample_count = sample_count
    cluster.updated_at = utcnow()
    db.flush()

    logger.debug("updated cluster id=%s sample_count=%d", cluster.id, sample_count)
    return cluster


def reassign_clusters(db: Session, from_person_id: str, to_person_id: str) -> int:
    """Move every cluster owned by one person to another. Returns how many moved."""
    moved = 0
    for cluster in list_clusters_for_person(db, from_person_id):
        cluster.person_id = to_person_id
        cluster.updated_at = utcnow()
        moved += 1
    db.flush()
    return moved


def delete_cluster(db: Session, cluster: PersonCluster) -> None:
    """Delete a cluster; embeddings that pointed to it become unassigned."""
    members = (
        db.query(PersonEmbedding)
        .filter(PersonEmbedding.cluster_id == cluster.id)
        .all()
    )
    for embedding in members:
        embedding.cluster_id = None
    db.flush()

    db.delete(cluster)
    db.flush()
    logger.info("deleted cluster id=%s person_id=%s", cluster.id, cluster.person_id)


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

def create_embedding(
    db: Session,
    vector: VectorLike,
    embedding_type: str,
    source_path: str,
    cluster_id: str | None = None,
    source_offset: Optional[Dict[str, Any]] = None,
    quality: Optional[float] = None,
    manual_assignment: bool = False,
) -> PersonEmbedding:
    embedding = PersonEmbedding(
        cluster_id=cluster_id,
        type=embedding_type,
        vector=pack_vector(vector),
        source_path=source_path,
        source_offset=source_offset,
        quality=quality,
        manual_assignment=manual_assignment,
    )
    db.add(embedding)
    db.flush()

    logger.debug(
        "created embedding id=%s source_path=%s type=%s cluster_id=%s",
        embedding.id,
        source_path,
        embedding_type,
        cluster_id,
    )
    return embedding


def get_embedding(db: Session, embedding_id: str) -> Optional[PersonEmbedding]:
    return db.get(PersonEmbedding, embedding_id)


def embedding_vector(embedding: PersonEmbedding) -> np.ndarray:
    return unpack_vector(embedding.vector)


def _embedding_order():
    return (PersonEmbedding.created_at.asc(), PersonEmbedding.id.asc())


def list_embeddings_for_cluster(db: Session, cluster_id: str) -> List[PersonEmbedding]:
    return (
        db.query(PersonEmbedding)
        .filter(PersonEmbedding.cluster_id == cluster_id)
        .order_by(*_embedding_order())
        .all()
    )


def count_embeddings_for_cluster(db: Session, cluster_id: str) -> int:
    return (
        db.query(func.count(PersonEmbedding.id))
        .filter(PersonEmbedding.cluster_id == cluster_id)
        .scalar()
        or 0
    )


def list_embeddings_for_source(db: Session, source_path: str) -> List[PersonEmbedding]:
    return (
        db.query(PersonEmbedding)
        .filter(PersonEmbedding.source_path == source_path)
        .order_by(*_embedding_order())
        .all()
    )


def list_embeddings_for_person(
    db: Session,
    person_id: str,
    embedding_type: str | None = None,
) -> List[PersonEmbedding]:
    """Embeddings reachable through the person's clusters."""
    query = (
        db.query(PersonEmbedding)
        .join(PersonCluster, PersonEmbedding.cluster_id == PersonCluster.id)
        .filter(PersonCluster.person_id == person_id)
    )
    if embedding_type:
        query = query.filter(PersonEmbedding.type == embedding_type)
    return query.order_by(*_embedding_order()).all()


def delete_embeddings(db: Session, embeddings: List[PersonEmbedding]) -> int:
    for embedding in embeddings:
        db.delete(embedding)
    db.flush()
    return len(embeddings)


def list_all_embeddings(db: Session) -> List[PersonEmbedding]:
    return db.query(PersonEmbedding).order_by(*_embedding_order()).all()
