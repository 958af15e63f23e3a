# identity/people/matching.py
"""
Clustering decision: which existing cluster (if any) a new vector joins.

Brute force over every cluster of the same type. That is fine at the scale of
a personal registry (hundreds of clusters, not millions).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Iterable, Optional, Tuple, TypeVar

import numpy as np
from sqlalchemy.orm import Session

from identity.people import store
from identity.people.models import PersonCluster
from identity.people.vectors import VectorLike, normalize, similarity

T = TypeVar("T")


@dataclass
class ClusterMatch(Generic[T]):
    cluster: T
    similarity: float


def pick_best(
    vector: VectorLike,
    candidates: Iterable[Tuple[T, np.ndarray]],
    threshold: Optional[float],
) -> Optional[ClusterMatch[T]]:
    """
    Highest-similarity candidate for an already-normalized vector.

    With a threshold, only similarities strictly above it qualify. With
    threshold=None every candidate qualifies (manual assignment). On ties the
    first candidate in iteration order wins, so callers pass a stable order.
    """
    best: Optional[ClusterMatch[T]] = None
    for item, centroid in candidates:
        sim = similarity(vector, centroid)
        if threshold is not None and not sim > threshold:
            continue
        if best is None or sim > best.similarity:
            best = ClusterMatch(cluster=item, similarity=sim)
    return best


def find_best_match(
    db: Session,
    vector: VectorLike,
    cluster_type: str,
    threshold: float,
) -> Optional[ClusterMatch[PersonCluster]]:
    """
    Find the cluster of `cluster_type` whose centroid is most similar to
    `vector`, provided the similarity is strictly greater than `threshold`.

    Returns None when no cluster qualifies, i.e. the vector belongs to a new
    identity.
    """
    q = normalize(vector)
    clusters = store.list_clusters_with_centroid(db, cluster_type)
    return pick_best(q, ((c, store.cluster_centroid(c)) for c in clusters), threshold)
