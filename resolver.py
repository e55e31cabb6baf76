"""
Identity reconciliation.

Resolves an (email, phoneNumber) pair into its identity group. A group is a
flat star: one primary contact (the oldest ever seen in the group) and
secondaries whose linkedId points straight at it. A resolution first reads
in a deferred transaction and returns from there when nothing needs writing.
Otherwise it redoes the match under the store's write lock, so two requests
bridging the same groups can never both see two primaries.
"""

from typing import Optional

import structlog

from db_models import Contact, LinkPrecedence
from db_setup import ContactStore, ContactTransaction
from errors import IntegrityViolation, InvalidInput

logger = structlog.get_logger()


def _seniority(contact: Contact):
    return (contact.createdAt, contact.id)


def _group_roots(tx: ContactTransaction, matches: list[Contact]) -> list[Contact]:
    """Primaries of every group the match set touches."""
    roots = {c.id: c for c in matches if c.is_primary}

    for contact in matches:
        if contact.is_primary or contact.linkedId in roots:
            continue
        if contact.linkedId is None:
            raise IntegrityViolation(f"Secondary contact {contact.id} has no linkedId")
        root = tx.get(contact.linkedId)
        if root is None or not root.is_primary:
            raise IntegrityViolation(
                f"Secondary contact {contact.id} links to {contact.linkedId}, which is not a live primary"
            )
        roots[root.id] = root

    return list(roots.values())


def _demote(tx: ContactTransaction, loser: Contact, primary: Contact):
    followers = [c for c in tx.find_group(loser.id) if c.id != loser.id]

    tx.update(loser.id, LinkPrecedence.SECONDARY, primary.id)
    for follower in followers:
        tx.update(follower.id, LinkPrecedence.SECONDARY, primary.id)

    logger.info(
        "Merged identity groups",
        primary_id=primary.id,
        demoted_id=loser.id,
        relinked=[c.id for c in followers],
    )


def _has_exact_pair(matches: list[Contact], email: Optional[str], phone: Optional[str]) -> bool:
    for contact in matches:
        if email is not None and contact.email != email:
            continue
        if phone is not None and contact.phoneNumber != phone:
            continue
        return True
    return False


def _check_group(group: list[Contact], primary_id: int):
    primaries = [c for c in group if c.is_primary]
    if len(primaries) != 1 or primaries[0].id != primary_id:
        raise IntegrityViolation(
            f"Group {primary_id} has primaries {[c.id for c in primaries]}"
        )


def _reconcile(tx: ContactTransaction, email: Optional[str], phone: Optional[str]) -> list[Contact]:
    matches = tx.find_matching(email, phone)

    if not matches:
        contact = tx.create(email, phone, LinkPrecedence.PRIMARY)
        logger.info("Created primary contact", contact_id=contact.id)
        return [contact]

    roots = _group_roots(tx, matches)
    primary = min(roots, key=_seniority)

    for root in roots:
        if root.id != primary.id:
            _demote(tx, root, primary)

    if not _has_exact_pair(matches, email, phone):
        contact = tx.create(email, phone, LinkPrecedence.SECONDARY, primary.id)
        logger.info("Created secondary contact", contact_id=contact.id, primary_id=primary.id)

    group = tx.find_group(primary.id)
    _check_group(group, primary.id)
    return group


def resolve(store: ContactStore, email: Optional[str] = None, phone: Optional[str] = None) -> list[Contact]:
    """Return the consolidated identity group for an (email, phone) pair.

    Creates a primary on first sighting, merges groups the pair bridges
    (oldest primary wins), and records a new secondary when the exact pair is
    not on file. The returned list starts with the primary.
    """
    if not email and not phone:
        raise InvalidInput()
    email = email or None
    phone = phone or None

    with store.transaction() as tx:
        matches = tx.find_matching(email, phone)
        if matches:
            roots = _group_roots(tx, matches)
            if len(roots) == 1 and _has_exact_pair(matches, email, phone):
                group = tx.find_group(roots[0].id)
                _check_group(group, roots[0].id)
                return group

    # the read above is only a hint; writers decide again under the lock
    with store.transaction(immediate=True) as tx:
        return _reconcile(tx, email, phone)
