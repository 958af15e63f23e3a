# identity/people/vectors.py
"""
Vector primitives shared by matching and centroid maintenance.

All stored vectors are unit length, so similarity is a plain dot product.
"""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

from identity.errors import DimensionMismatch

VectorLike = Union[np.ndarray, Sequence[float]]


# ---------------------------------------------------------------------------
# Embedding serialization helpers
# ---------------------------------------------------------------------------

def pack_vector(vec: VectorLike) -> bytes:
    """
    Convert a vector into raw bytes suitable for storing in a binary column.

    We always force float32 to keep size consistent.
    """
    return np.asarray(vec, dtype="float32").tobytes()


def unpack_vector(buf: bytes) -> np.ndarray:
    """Convert raw bytes from the DB back into a float32 numpy vector."""
    return np.frombuffer(buf, dtype="float32")


# ---------------------------------------------------------------------------
# Math
# ---------------------------------------------------------------------------

def as_vector(vec: VectorLike) -> np.ndarray:
    return np.asarray(vec, dtype=np.float64).reshape(-1)


def check_same_length(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatch(a.shape[0], b.shape[0])


def normalize(vec: VectorLike) -> np.ndarray:
    """
    L2-normalize a vector.

    A zero vector has no direction and is returned unchanged; upstream
    extractors never produce one in practice.
    """
    v = as_vector(vec)
    norm = np.linalg.norm(v)
    if norm == 0:
        return v
    return v / norm


def similarity(a: VectorLike, b: VectorLike) -> float:
    """
    Cosine similarity of two vectors that are *already* normalized.

    This is a raw dot product; callers are responsible for normalization.
    """
    a = as_vector(a)
    b = as_vector(b)
    check_same_length(a, b)
    return float(np.dot(a, b))
