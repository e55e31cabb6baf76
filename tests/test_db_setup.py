"""Tests for the sqlite contact store."""

import sqlite3

import pytest

from db_models import LinkPrecedence

pytestmark = pytest.mark.unit


def test_init_schema_is_idempotent(store):
    store.init_schema()
    store.init_schema()

    with store.transaction() as tx:
        assert tx.find_matching("a@x.com", None) == []


def test_missing_identifier_never_matches_null_columns(store):
    with store.transaction() as tx:
        tx.create(email="a@x.com")
        tx.create(phone="123")

        assert [c.email for c in tx.find_matching("a@x.com", None)] == ["a@x.com"]
        assert [c.phoneNumber for c in tx.find_matching(None, "123")] == ["123"]
        assert tx.find_matching(None, None) == []


def test_find_matching_is_disjunctive(store):
    with store.transaction() as tx:
        a = tx.create(email="a@x.com", phone="111")
        b = tx.create(email="b@x.com", phone="123")
        tx.create(email="c@x.com", phone="999")

        matches = tx.find_matching("a@x.com", "123")

    assert [c.id for c in matches] == [a.id, b.id]


def test_create_assigns_id_and_timestamps(store):
    with store.transaction() as tx:
        contact = tx.create("a@x.com", "123", LinkPrecedence.PRIMARY)

    assert contact.id == 1
    assert contact.createdAt == contact.updatedAt
    assert contact.createdAt.tzinfo is not None


def test_update_changes_only_link_fields(store):
    with store.transaction() as tx:
        primary = tx.create(email="a@x.com")
        other = tx.create(phone="123")
        tx.update(other.id, LinkPrecedence.SECONDARY, primary.id)
        updated = tx.get(other.id)

    assert updated.linkPrecedence == LinkPrecedence.SECONDARY
    assert updated.linkedId == primary.id
    assert updated.phoneNumber == other.phoneNumber
    assert updated.createdAt == other.createdAt
    assert updated.updatedAt > other.updatedAt


def test_find_group_lists_primary_first(store):
    with store.transaction() as tx:
        primary = tx.create(email="a@x.com")
        older = tx.create(phone="123")
        tx.create(email="z@x.com")
        newer = tx.create(email="a@x.com", phone="456", precedence=LinkPrecedence.SECONDARY, linked_id=primary.id)
        tx.update(older.id, LinkPrecedence.SECONDARY, primary.id)

        group = tx.find_group(primary.id)

    assert [c.id for c in group] == [primary.id, older.id, newer.id]


def test_soft_deleted_contacts_are_hidden(store, all_rows):
    with store.transaction() as tx:
        contact = tx.create(email="a@x.com")
        tx.soft_delete(contact.id)

        assert tx.get(contact.id) is None
        assert tx.find_matching("a@x.com", None) == []
        assert tx.find_group(contact.id) == []

    assert all_rows()[0]["deletedAt"] is not None


def test_exception_rolls_back(store, all_rows):
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            tx.create(email="a@x.com")
            raise RuntimeError("abort")

    assert all_rows() == []


def test_original_error_survives_engine_rollback(store, all_rows):
    # sqlite abandons the transaction itself on errors such as SQLITE_FULL
    with pytest.raises(RuntimeError, match="disk full"):
        with store.transaction() as tx:
            tx.create(email="a@x.com")
            tx._conn.execute("ROLLBACK")
            raise RuntimeError("disk full")

    assert all_rows() == []


def test_database_uses_wal_journal(store, db_path):
    conn = sqlite3.connect(db_path)
    try:
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    finally:
        conn.close()
