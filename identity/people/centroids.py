# identity/people/centroids.py
"""
Incremental centroid maintenance for clusters.

Every function is pure: it takes a cluster's aggregate state and returns the
new unit-length centroid, or None when the cluster would have no members.
The incremental formulas are only exact while sample_count matches the real
membership, which is why the orchestrator verifies the count first.

Running mean formulas:
    add:    new = (old * n + v) / (n + 1)
    remove: new = (old * n - v) / (n - 1)
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from identity.people.vectors import VectorLike, as_vector, check_same_length, normalize


def add_to_centroid(
    centroid: Optional[VectorLike],
    sample_count: int,
    vector: VectorLike,
) -> np.ndarray:
    """Centroid after adding one normalized vector to a cluster of n samples."""
    v = as_vector(vector)
    if centroid is None or sample_count == 0:
        # First embedding becomes the centroid
        return normalize(v)

    c = as_vector(centroid)
    check_same_length(c, v)
    n = sample_count
    return normalize((c * n + v) / (n + 1))


def remove_from_centroid(
    centroid: Optional[VectorLike],
    sample_count: int,
    vector: VectorLike,
) -> Optional[np.ndarray]:
    """
    Centroid after removing one normalized vector from a cluster of n samples.

    Returns None when nothing would remain; the caller must then delete the
    cluster.
    """
    if sample_count <= 1 or centroid is None:
        return None

    c = as_vector(centroid)
    v = as_vector(vector)
    check_same_length(c, v)
    n = sample_count
    return normalize((c * n - v) / (n - 1))


def recompute_centroid(vectors: Sequence[VectorLike]) -> Optional[np.ndarray]:
    """
    Centroid from scratch: normalized mean of the given vectors.

    Used after bulk deletions, where applying the removal formula once per
    vanished embedding is not reliable.
    """
    if len(vectors) == 0:
        return None

    stacked = [as_vector(v) for v in vectors]
    for v in stacked[1:]:
        check_same_length(stacked[0], v)
    return normalize(np.mean(np.vstack(stacked), axis=0))


def merge_centroids(
    centroid_a: Optional[VectorLike],
    count_a: int,
    centroid_b: Optional[VectorLike],
    count_b: int,
) -> Optional[np.ndarray]:
    """
    Count-weighted union of two cluster centroids.

        merged = (a * n_a + b * n_b) / (n_a + n_b)
    """
    if centroid_a is None or centroid_b is None:
        remaining = centroid_a if centroid_a is not None else centroid_b
        return None if remaining is None else normalize(remaining)

    total = count_a + count_b
    if total == 0:
        return None

    a = as_vector(centroid_a)
    b = as_vector(centroid_b)
    check_same_length(a, b)
    return normalize((a * count_a + b * count_b) / total)
