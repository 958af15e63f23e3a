# identity/people/cleanup.py
"""
Cascade cleanup shared by every operation that can empty a cluster.

A pending placeholder person exists only to own auto-discovered clusters.
Once its last cluster is gone it must go too.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from identity.people import store
from identity.people.models import PersonCluster

logger = logging.getLogger(__name__)


def cleanup_if_orphaned(db: Session, person_id: str) -> bool:
    """
    Delete the person if they own zero clusters and have neither a display
    name nor an identity source. Returns True if the person was deleted.
    """
    person = store.get_person(db, person_id)
    if person is None or not person.is_placeholder:
        return False
    if store.count_clusters_for_person(db, person_id) > 0:
        return False

    db.delete(person)
    db.flush()
    logger.info("deleted empty pending person id=%s", person_id)
    return True


def delete_cluster_and_cleanup(db: Session, cluster: PersonCluster) -> bool:
    """
    Delete a cluster, then reap its former owner if that left them orphaned.
    Returns True if the owner was deleted as well.
    """
    person_id = cluster.person_id
    store.delete_cluster(db, cluster)
    return cleanup_if_orphaned(db, person_id)
