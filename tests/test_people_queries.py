# tests/test_people_queries.py
"""
Tests for PeopleRegistry queries and named-person maintenance.

We test:
    - Listing people (ordering, pending/identified filters, pagination)
    - Per-person cluster/embedding counts
    - Creating, updating and deleting named people
    - Full reset of clustering data
"""

import pytest

from identity.errors import InvalidRequest, NotFound


def ingest(registry, vector, type="face", source_path="photos/a.jpg"):
    return registry.ingest_with_auto_clustering(vector, type, source_path)


# ---------------------------------------------------------------------------
# Fixture: a small registry with every kind of person
# ---------------------------------------------------------------------------
@pytest.fixture
def populated(registry, unit_vector):
    bob = registry.create_person(display_name="Bob", identity_source="contacts/bob.vcf")
    alice = registry.create_person(display_name="Alice", identity_source="contacts/alice.vcf")
    carol = registry.create_person(display_name="Carol")
    placeholder = ingest(registry, unit_vector(1, 0)).person
    return {"alice": alice, "bob": bob, "carol": carol, "placeholder": placeholder}


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------
def test_list_people_puts_identified_first(registry, populated):
    ids = [p.id for p in registry.list_people()]

    # Identified by name, then pending (unnamed placeholders sort first).
    assert ids == [
        populated["alice"].id,
        populated["bob"].id,
        populated["placeholder"].id,
        populated["carol"].id,
    ]


def test_list_people_filters(registry, populated):
    pending = [p.id for p in registry.list_people(pending_only=True)]
    identified = [p.id for p in registry.list_people(identified_only=True)]

    assert pending == [populated["placeholder"].id, populated["carol"].id]
    assert identified == [populated["alice"].id, populated["bob"].id]


def test_list_people_paginates(registry, populated):
    page = registry.list_people(limit=2, offset=1)

    assert [p.id for p in page] == [populated["bob"].id, populated["placeholder"].id]


def test_zero_limit_returns_no_rows(registry, populated):
    assert registry.list_people(limit=0) == []
    assert registry.list_people_with_counts(limit=0) == []


def test_count_people(registry, populated):
    assert registry.count_people() == 4
    assert registry.count_people(pending_only=True) == 2
    assert registry.count_people(identified_only=True) == 2


def test_list_people_with_counts(registry, unit_vector):
    first = ingest(registry, unit_vector(1, 0))
    voice = ingest(registry, unit_vector(1, 0), type="voice", source_path="calls/1.m4a")
    registry.assign_embedding_to_person(voice.embedding.id, first.person.id)
    ingest(registry, unit_vector(1, 0.05), source_path="photos/b.jpg")

    [row] = registry.list_people_with_counts()

    assert row.person.id == first.person.id
    assert row.face_cluster_count == 1
    assert row.voice_cluster_count == 1
    assert row.embedding_count == 3


def test_list_people_with_counts_includes_people_without_clusters(registry, populated):
    rows = {row.person.id: row for row in registry.list_people_with_counts(identified_only=True)}

    assert set(rows) == {populated["alice"].id, populated["bob"].id}
    assert all(r.face_cluster_count == 0 and r.embedding_count == 0 for r in rows.values())


def test_list_embeddings_for_person_by_type(registry, unit_vector):
    alice = registry.create_person(display_name="Alice")
    face = ingest(registry, unit_vector(1, 0))
    voice = ingest(registry, unit_vector(1, 0), type="voice", source_path="calls/1.m4a")
    registry.assign_embedding_to_person(face.embedding.id, alice.id)
    registry.assign_embedding_to_person(voice.embedding.id, alice.id)

    assert [e.id for e in registry.list_embeddings_for_person(alice.id)] == [face.embedding.id, voice.embedding.id]
    assert [e.id for e in registry.list_embeddings_for_person(alice.id, "voice")] == [voice.embedding.id]
    assert [c.type for c in registry.list_clusters_for_person(alice.id, "face")] == ["face"]


def test_queries_on_unknown_ids(registry):
    with pytest.raises(NotFound):
        registry.get_person("missing")
    with pytest.raises(NotFound):
        registry.list_clusters_for_person("missing")
    with pytest.raises(NotFound):
        registry.list_embeddings_for_person("missing")
    with pytest.raises(NotFound):
        registry.list_embeddings_for_cluster("missing")
    assert registry.list_embeddings_for_source("missing.jpg") == []


# ---------------------------------------------------------------------------
# Named people
# ---------------------------------------------------------------------------
def test_create_person_requires_identifying_data(registry):
    with pytest.raises(InvalidRequest):
        registry.create_person()
    with pytest.raises(InvalidRequest):
        registry.create_person(display_name="")

    assert registry.count_people() == 0


def test_create_person_with_explicit_id(registry):
    person = registry.create_person(identity_source="contacts/dan.vcf", person_id="dan")

    assert person.id == "dan"
    assert person.is_pending is False
    with pytest.raises(InvalidRequest):
        registry.create_person(display_name="Dan again", person_id="dan")


def test_update_person_changes_only_given_fields(registry):
    person = registry.create_person(display_name="Eve", avatar="avatars/eve.png")

    updated = registry.update_person(person.id, identity_source="contacts/eve.vcf")

    assert updated.display_name == "Eve"
    assert updated.avatar == "avatars/eve.png"
    assert updated.identity_source == "contacts/eve.vcf"
    assert updated.is_pending is False


def test_naming_a_pending_person(registry, unit_vector):
    pending = ingest(registry, unit_vector(1, 0)).person

    updated = registry.update_person(pending.id, display_name="Frank")

    assert updated.display_name == "Frank"
    assert registry.get_person(pending.id).display_name == "Frank"


def test_clearing_identity_of_person_without_clusters_deletes_them(registry, check_invariants):
    person = registry.create_person(display_name="Gina")

    assert registry.update_person(person.id, display_name=None) is None
    with pytest.raises(NotFound):
        registry.get_person(person.id)
    check_invariants()


def test_clearing_identity_of_person_with_clusters_keeps_them(registry, unit_vector):
    pending = ingest(registry, unit_vector(1, 0)).person
    registry.update_person(pending.id, display_name="Hank")

    cleared = registry.update_person(pending.id, display_name=None)

    assert cleared is not None
    assert cleared.display_name is None


def test_update_person_rejects_unknown_fields(registry):
    person = registry.create_person(display_name="Ivy")

    with pytest.raises(InvalidRequest):
        registry.update_person(person.id, nickname="ivy")
    with pytest.raises(NotFound):
        registry.update_person("missing", display_name="x")


def test_delete_person_unassigns_their_embeddings(registry, unit_vector, check_invariants):
    alice = registry.create_person(display_name="Alice")
    result = ingest(registry, unit_vector(1, 0))
    registry.merge_people(alice.id, result.person.id)

    registry.delete_person(alice.id)

    with pytest.raises(NotFound):
        registry.get_person(alice.id)
    [embedding] = registry.list_embeddings_for_source("photos/a.jpg")
    assert embedding.cluster_id is None
    assert embedding.manual_assignment is False
    check_invariants()

    with pytest.raises(NotFound):
        registry.delete_person(alice.id)


# ---------------------------------------------------------------------------
# Full reset
# ---------------------------------------------------------------------------
def test_delete_all_embeddings_keeps_only_named_people(registry, populated, unit_vector, check_invariants):
    result = ingest(registry, unit_vector(0, 1), source_path="photos/b.jpg")
    registry.assign_embedding_to_person(result.embedding.id, populated["alice"].id)

    deleted = registry.delete_all_embeddings()

    assert deleted == 2
    remaining = {p.id for p in registry.list_people()}
    assert remaining == {populated["alice"].id, populated["bob"].id, populated["carol"].id}
    assert registry.list_clusters_for_person(populated["alice"].id) == []
    assert registry.list_embeddings_for_source("photos/a.jpg") == []
    assert registry.count_people(pending_only=True) == 1
    check_invariants()
