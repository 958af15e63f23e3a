# tests/conftest.py
"""
Shared pytest fixtures for identity registry testing.

All tests use an in-memory SQLite database so that:
- No state persists between tests
- Tests are fast and deterministic
- The real database file is never touched

Fixtures:
    engine            → Creates all tables in a fresh in-memory DB
    session_factory   → sessionmaker bound to that engine
    registry          → PeopleRegistry using the test DB and default thresholds
    unit_vector       → Builds normalized 8-D vectors from leading components
    check_invariants  → Asserts the cross-entity invariants hold right now
"""

from collections.abc import Generator

import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from identity.config import ClusteringConfig
from identity.db import init_db
from identity.people.models import Person, PersonCluster, PersonEmbedding
from identity.people.service import PeopleRegistry
from identity.people.vectors import unpack_vector

DIM = 8


# ---------------------------------------------------------------------------
# Engine fixture: new, clean in-memory DB for each test
# ---------------------------------------------------------------------------
@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    # StaticPool keeps the single in-memory connection alive across sessions.
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)

    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def registry(session_factory) -> PeopleRegistry:
    config = ClusteringConfig(face_threshold=0.80, voice_threshold=0.75, lock_timeout_seconds=5)
    return PeopleRegistry(session_factory=session_factory, config=config)


# ---------------------------------------------------------------------------
# Embedding fixtures: deterministic vectors for testing identity logic
# ---------------------------------------------------------------------------
@pytest.fixture
def unit_vector():
    """
    Returns a builder: unit_vector(1, 0.05) -> normalized 8-D float64 vector
    whose leading components are the given values and the rest zeros.
    """

    def make(*components: float, dim: int = DIM) -> np.ndarray:
        vec = np.zeros(dim, dtype=np.float64)
        vec[: len(components)] = components
        return vec / np.linalg.norm(vec)

    return make


# ---------------------------------------------------------------------------
# Invariant checker
# ---------------------------------------------------------------------------
@pytest.fixture
def check_invariants(session_factory):
    """
    Returns a function that asserts, against committed state:
        - every cluster belongs to an existing person
        - every assigned embedding points at an existing cluster of its type
        - sample_count equals the live member count
        - every centroid is unit length
        - no placeholder person is left without clusters
    """

    def check() -> None:
        with session_factory() as db:
            people = {p.id: p for p in db.query(Person).all()}
            clusters = {c.id: c for c in db.query(PersonCluster).all()}
            embeddings = db.query(PersonEmbedding).all()

            for cluster in clusters.values():
                assert cluster.person_id in people
                members = [e for e in embeddings if e.cluster_id == cluster.id]
                assert cluster.sample_count == len(members)
                if cluster.centroid is not None:
                    assert np.isclose(np.linalg.norm(unpack_vector(cluster.centroid)), 1.0, atol=1e-5)

            for embedding in embeddings:
                if embedding.cluster_id is not None:
                    assert embedding.cluster_id in clusters
                    assert clusters[embedding.cluster_id].type == embedding.type

            owners = {c.person_id for c in clusters.values()}
            for person in people.values():
                if person.is_placeholder:
                    assert person.id in owners

    return check
