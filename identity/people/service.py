# identity/people/service.py
"""
Service layer for the identity registry.

This module contains *logic* (no transport), so it can be unit-tested
directly and reused by the review UI and the file-lifecycle pipeline.

Responsibilities:
- Ingest embeddings with online clustering (join the best cluster or found a
  new pending person).
- Manual corrections: assign an embedding to a person, unassign it, merge
  two people.
- Drop everything derived from a source file when that file is deleted.
- Keep centroids, sample counts and placeholder people consistent through
  all of the above.

Every mutation runs in one transaction while holding the per-type clustering
lock(s), so a decision and the writes that follow it are atomic.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np
from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from identity.config import ClusteringConfig
from identity.db import SessionLocal, get_session
from identity.errors import InconsistentState, InvalidOperation, InvalidRequest, NotFound
from identity.people import store
from identity.people.centroids import add_to_centroid, recompute_centroid, remove_from_centroid
from identity.people.cleanup import cleanup_if_orphaned, delete_cluster_and_cleanup
from identity.people.locks import TypeLocks
from identity.people.matching import find_best_match, pick_best
from identity.people.models import Person, PersonCluster, PersonEmbedding, utcnow
from identity.people.schemas import (
    AssignResult,
    ClusterOut,
    EmbeddingIn,
    EmbeddingOut,
    IngestResult,
    PersonOut,
    PersonWithCounts,
    SourceDeletionResult,
)
from identity.people.vectors import normalize

logger = logging.getLogger(__name__)

_PERSON_FIELDS = ("display_name", "identity_source", "avatar")


# ---------------------------------------------------------------------------
# Lookups that fail loudly
# ---------------------------------------------------------------------------

def _require_person(db: Session, person_id: str) -> Person:
    person = store.get_person(db, person_id)
    if person is None:
        raise NotFound(f"Person not found: {person_id}")
    return person


def _require_embedding(db: Session, embedding_id: str) -> PersonEmbedding:
    embedding = store.get_embedding(db, embedding_id)
    if embedding is None:
        raise NotFound(f"Embedding not found: {embedding_id}")
    return embedding


def _require_cluster(db: Session, cluster_id: str) -> PersonCluster:
    cluster = store.get_cluster(db, cluster_id)
    if cluster is None:
        raise NotFound(f"Cluster not found: {cluster_id}")
    return cluster


def _current_cluster(db: Session, embedding: PersonEmbedding) -> PersonCluster:
    """The cluster an assigned embedding points at; it must exist."""
    cluster = store.get_cluster(db, embedding.cluster_id)
    if cluster is None:
        raise InconsistentState(
            f"Embedding {embedding.id} points at missing cluster {embedding.cluster_id}"
        )
    return cluster


def _check_sample_count(db: Session, cluster: PersonCluster) -> None:
    live = store.count_embeddings_for_cluster(db, cluster.id)
    if live != cluster.sample_count:
        raise InconsistentState(
            f"Cluster {cluster.id} has sample_count={cluster.sample_count} "
            f"but {live} embeddings reference it"
        )


# ---------------------------------------------------------------------------
# Centroid-aware attach / detach
# ---------------------------------------------------------------------------

def _attach(db: Session, embedding: PersonEmbedding, cluster: PersonCluster, vector: np.ndarray) -> None:
    """Point an unattached embedding at `cluster` and fold it into the centroid."""
    _check_sample_count(db, cluster)
    centroid = add_to_centroid(store.cluster_centroid(cluster), cluster.sample_count, vector)

    embedding.cluster_id = cluster.id
    store.update_cluster(db, cluster, centroid=centroid, sample_count=cluster.sample_count + 1)


def _detach(db: Session, embedding: PersonEmbedding, vector: np.ndarray) -> bool:
    """
    Take an embedding out of its current cluster.

    The cluster's centroid is updated with the removal formula, or the cluster
    is deleted when this was its last member (reaping an orphaned owner).
    Returns True if the cluster was deleted.
    """
    cluster = _current_cluster(db, embedding)
    _check_sample_count(db, cluster)

    n = cluster.sample_count
    centroid = store.cluster_centroid(cluster)
    if centroid is None and n > 1:
        raise InconsistentState(f"Cluster {cluster.id} has {n} members but no centroid")

    embedding.cluster_id = None
    db.flush()

    new_centroid = remove_from_centroid(centroid, n, vector)
    if new_centroid is None:
        delete_cluster_and_cleanup(db, cluster)
        return True

    store.update_cluster(db, cluster, centroid=new_centroid, sample_count=n - 1)
    return False


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class PeopleRegistry:
    """
    Entry point for all identity clustering operations.

    Usage:
        registry = PeopleRegistry()
        result = registry.ingest_with_auto_clustering(vec, "face", "photos/a.jpg")
        if result.is_new_person:
            ...
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        config: Optional[ClusteringConfig] = None,
    ):
        self.config = config or ClusteringConfig()
        self._session_factory = session_factory or SessionLocal
        self._locks = TypeLocks(timeout=self.config.lock_timeout_seconds)

    # ------------------------------------------------------------------
    # Auto-clustering
    # ------------------------------------------------------------------

    def ingest_with_auto_clustering(
        self,
        vector,
        type: str,
        source_path: str,
        source_offset: Optional[Dict[str, Any]] = None,
        quality: Optional[float] = None,
        manual_assignment: bool = False,
    ) -> IngestResult:
        """
        Store a new embedding and cluster it online.

        The vector joins the most similar cluster of its type if that
        similarity is above the type's threshold; otherwise a new pending
        person with a single-member cluster is created for it.
        """
        try:
            payload = EmbeddingIn(
                vector=vector,
                type=type,
                source_path=source_path,
                source_offset=source_offset,
                quality=quality,
                manual_assignment=manual_assignment,
            )
        except ValidationError as exc:
            raise InvalidRequest(str(exc)) from exc

        if payload.manual_assignment:
            raise InvalidRequest(
                "Manual assignment requires explicit person assignment; "
                "use assign_embedding_to_person instead"
            )

        threshold = self.config.threshold_for(payload.type)
        normalized = normalize(payload.vector)

        with self._locks.hold([payload.type]), get_session(self._session_factory) as db:
            match = find_best_match(db, normalized, payload.type, threshold)

            if match is not None:
                cluster = match.cluster
                _check_sample_count(db, cluster)
                centroid = add_to_centroid(store.cluster_centroid(cluster), cluster.sample_count, normalized)

                embedding = store.create_embedding(
                    db,
                    normalized,
                    payload.type,
                    payload.source_path,
                    cluster_id=cluster.id,
                    source_offset=payload.source_offset,
                    quality=payload.quality,
                )
                store.update_cluster(db, cluster, centroid=centroid, sample_count=cluster.sample_count + 1)

                person = store.get_person(db, cluster.person_id)
                if person is None:
                    raise InconsistentState(f"Cluster {cluster.id} has no person")

                logger.info(
                    "added embedding %s to cluster %s (person %s, similarity %.4f)",
                    embedding.id,
                    cluster.id,
                    person.id,
                    match.similarity,
                )
                is_new_person = False
                sim = match.similarity
            else:
                person = store.create_person(db)
                cluster = store.create_cluster(
                    db,
                    person.id,
                    payload.type,
                    centroid=normalized,
                    sample_count=1,
                )
                embedding = store.create_embedding(
                    db,
                    normalized,
                    payload.type,
                    payload.source_path,
                    cluster_id=cluster.id,
                    source_offset=payload.source_offset,
                    quality=payload.quality,
                )
                logger.info(
                    "created new cluster %s and pending person %s for embedding %s",
                    cluster.id,
                    person.id,
                    embedding.id,
                )
                is_new_person = True
                sim = None

            return IngestResult(
                embedding=EmbeddingOut.model_validate(embedding),
                cluster=ClusterOut.model_validate(cluster),
                person=PersonOut.model_validate(person),
                is_new_person=is_new_person,
                similarity=sim,
            )

    # ------------------------------------------------------------------
    # Manual corrections
    # ------------------------------------------------------------------

    # Assign and unassign can reap a placeholder person (dropping their last
    # cluster) or add a cluster to any person, so they serialise with every
    # type, not only the embedding's own.

    def assign_embedding_to_person(self, embedding_id: str, person_id: str) -> AssignResult:
        """
        Attach an embedding to a person regardless of similarity thresholds.

        The embedding goes into the person's most similar cluster of the same
        type, or a new cluster if they have none. It is flagged as a manual
        assignment so auto-clustering never moves it again.
        """
        with self._locks.hold_all(), get_session(self._session_factory) as db:
            embedding = _require_embedding(db, embedding_id)
            _require_person(db, person_id)
            vector = store.embedding_vector(embedding)

            existing = store.list_clusters_for_person(db, person_id, embedding.type)
            target: Optional[PersonCluster] = None
            if existing:
                best = pick_best(
                    vector,
                    ((c, store.cluster_centroid(c)) for c in existing if c.centroid is not None),
                    threshold=None,
                )
                # Clusters without a centroid should not exist; fall back to the oldest.
                target = best.cluster if best is not None else existing[0]

            if target is not None and embedding.cluster_id == target.id:
                embedding.manual_assignment = True
                db.flush()
                logger.info("embedding %s already in cluster %s; marked manual", embedding_id, target.id)
            else:
                if embedding.cluster_id is not None:
                    _detach(db, embedding, vector)
                if target is None:
                    target = store.create_cluster(db, person_id, embedding.type)
                _attach(db, embedding, target, vector)
                embedding.manual_assignment = True
                db.flush()
                logger.info(
                    "assigned embedding %s to person %s (cluster %s)",
                    embedding_id,
                    person_id,
                    target.id,
                )

            return AssignResult(
                embedding=EmbeddingOut.model_validate(embedding),
                cluster=ClusterOut.model_validate(target),
            )

    def unassign_embedding(self, embedding_id: str) -> EmbeddingOut:
        """
        Remove an embedding from clustering control without deleting it.

        The embedding is left with no cluster and manual_assignment=True.
        """
        with self._locks.hold_all(), get_session(self._session_factory) as db:
            embedding = _require_embedding(db, embedding_id)
            previous = embedding.cluster_id

            if previous is not None:
                _detach(db, embedding, store.embedding_vector(embedding))

            embedding.manual_assignment = True
            db.flush()

            logger.info("unassigned embedding %s from cluster %s", embedding_id, previous)
            return EmbeddingOut.model_validate(embedding)

    def merge_people(self, target_id: str, source_id: str) -> PersonOut:
        """
        Move every cluster of `source_id` to `target_id`, then delete the
        source person.

        Clusters are moved as they are: if both people already had a face
        cluster, the target now owns two.
        """
        if target_id == source_id:
            raise InvalidOperation("Cannot merge person with itself")

        with self._locks.hold_all(), get_session(self._session_factory) as db:
            target = _require_person(db, target_id)
            source = _require_person(db, source_id)

            moved = store.reassign_clusters(db, source_id, target_id)
            store.delete_person(db, source)

            target.updated_at = utcnow()
            db.flush()

            logger.info("merged person %s into %s (%d clusters moved)", source_id, target_id, moved)
            return PersonOut.model_validate(target)

    # ------------------------------------------------------------------
    # Source lifecycle
    # ------------------------------------------------------------------

    def handle_source_file_deletion(self, source_path: str) -> SourceDeletionResult:
        """
        Delete every embedding extracted from `source_path` and repair the
        clusters they belonged to.

        Clusters left empty are deleted (with placeholder cleanup). The rest
        get their centroid recomputed from the remaining members and their
        sample_count set to the exact remaining count.
        """
        with self._locks.hold_all(), get_session(self._session_factory) as db:
            embeddings = store.list_embeddings_for_source(db, source_path)
            touched = sorted({e.cluster_id for e in embeddings if e.cluster_id is not None})

            deleted = store.delete_embeddings(db, embeddings)

            result = SourceDeletionResult(source_path=source_path, deleted_embeddings=deleted)
            for cluster_id in touched:
                cluster = store.get_cluster(db, cluster_id)
                if cluster is None:
                    raise InconsistentState(
                        f"Cluster {cluster_id} referenced by {source_path} no longer exists"
                    )

                remaining = store.list_embeddings_for_cluster(db, cluster_id)
                if not remaining:
                    person_id = cluster.person_id
                    result.deleted_cluster_ids.append(cluster_id)
                    if delete_cluster_and_cleanup(db, cluster):
                        result.deleted_person_ids.append(person_id)
                else:
                    centroid = recompute_centroid([store.embedding_vector(e) for e in remaining])
                    store.update_cluster(db, cluster, centroid=centroid, sample_count=len(remaining))
                    result.updated_cluster_ids.append(cluster_id)

            logger.info(
                "handled source file deletion %s: %d embeddings, %d clusters updated, "
                "%d clusters deleted, %d people deleted",
                source_path,
                deleted,
                len(result.updated_cluster_ids),
                len(result.deleted_cluster_ids),
                len(result.deleted_person_ids),
            )
            return result

    def delete_all_embeddings(self) -> int:
        """
        Full reset of clustering data.

        Deletes every embedding and every cluster. Pending people disappear
        with their clusters; named people are kept. Returns the number of
        embeddings deleted.
        """
        with self._locks.hold_all(), get_session(self._session_factory) as db:
            deleted = store.delete_embeddings(db, store.list_all_embeddings(db))

            reaped = 0
            for cluster in store.list_all_clusters(db):
                if delete_cluster_and_cleanup(db, cluster):
                    reaped += 1

            logger.info("deleted all embeddings: %d embeddings, %d pending people", deleted, reaped)
            return deleted

    # ------------------------------------------------------------------
    # Named people
    # ------------------------------------------------------------------

    def create_person(
        self,
        display_name: Optional[str] = None,
        identity_source: Optional[str] = None,
        avatar: Optional[str] = None,
        person_id: Optional[str] = None,
    ) -> PersonOut:
        """Create an identified or named person with no clusters yet."""
        if not display_name and identity_source is None:
            raise InvalidRequest("A person needs a display_name or an identity_source")

        with get_session(self._session_factory) as db:
            if person_id is not None and store.get_person(db, person_id) is not None:
                raise InvalidRequest(f"Person already exists: {person_id}")
            person = store.create_person(
                db,
                display_name=display_name,
                identity_source=identity_source,
                avatar=avatar,
                person_id=person_id,
            )
            return PersonOut.model_validate(person)

    def update_person(self, person_id: str, **updates: Any) -> Optional[PersonOut]:
        """
        Update display_name / identity_source / avatar.

        Only the keyword arguments given are changed. If the update leaves a
        person with no clusters and nothing identifying them, they are deleted
        and None is returned.
        """
        unknown = set(updates) - set(_PERSON_FIELDS)
        if unknown:
            raise InvalidRequest(f"Unknown person fields: {sorted(unknown)}")

        with self._locks.hold_all(), get_session(self._session_factory) as db:
            person = _require_person(db, person_id)
            store.update_person(db, person, updates)

            if cleanup_if_orphaned(db, person_id):
                return None
            return PersonOut.model_validate(person)

    def delete_person(self, person_id: str) -> None:
        """Delete a person and their clusters; their embeddings become unassigned."""
        with self._locks.hold_all(), get_session(self._session_factory) as db:
            store.delete_person(db, _require_person(db, person_id))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_person(self, person_id: str) -> PersonOut:
        with get_session(self._session_factory) as db:
            return PersonOut.model_validate(_require_person(db, person_id))

    def list_people(
        self,
        pending_only: bool = False,
        identified_only: bool = False,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[PersonOut]:
        """People ordered identified-first, then by name, then newest first."""
        with get_session(self._session_factory) as db:
            people = store.list_people(db, pending_only, identified_only, limit, offset)
            return [PersonOut.model_validate(p) for p in people]

    def count_people(self, pending_only: bool = False, identified_only: bool = False) -> int:
        with get_session(self._session_factory) as db:
            return store.count_people(db, pending_only, identified_only)

    def list_people_with_counts(
        self,
        pending_only: bool = False,
        identified_only: bool = False,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[PersonWithCounts]:
        with get_session(self._session_factory) as db:
            rows = store.list_people_with_counts(db, pending_only, identified_only, limit, offset)
            return [
                PersonWithCounts(
                    person=PersonOut.model_validate(row["person"]),
                    face_cluster_count=row["face_cluster_count"],
                    voice_cluster_count=row["voice_cluster_count"],
                    embedding_count=row["embedding_count"],
                )
                for row in rows
            ]

    def list_clusters_for_person(self, person_id: str, type: Optional[str] = None) -> List[ClusterOut]:
        with get_session(self._session_factory) as db:
            _require_person(db, person_id)
            return [ClusterOut.model_validate(c) for c in store.list_clusters_for_person(db, person_id, type)]

    def list_embeddings_for_person(self, person_id: str, type: Optional[str] = None) -> List[EmbeddingOut]:
        with get_session(self._session_factory) as db:
            _require_person(db, person_id)
            return [EmbeddingOut.model_validate(e) for e in store.list_embeddings_for_person(db, person_id, type)]

    def list_embeddings_for_cluster(self, cluster_id: str) -> List[EmbeddingOut]:
        with get_session(self._session_factory) as db:
            _require_cluster(db, cluster_id)
            return [EmbeddingOut.model_validate(e) for e in store.list_embeddings_for_cluster(db, cluster_id)]

    def list_embeddings_for_source(self, source_path: str) -> List[EmbeddingOut]:
        with get_session(self._session_factory) as db:
            return [EmbeddingOut.model_validate(e) for e in store.list_embeddings_for_source(db, source_path)]
