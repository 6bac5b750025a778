"""Tests for the PostgreSQL store using mocked psycopg connections."""

from unittest.mock import MagicMock

import psycopg
import pytest

from citedoc.core.errors import NotFoundError, StoreError
from citedoc.core.models import Document, Role
from citedoc.core.store import DocumentStore, FragmentSession, escape_like, vector_literal


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def conn(cursor):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    return conn


@pytest.fixture
def store(conn):
    pool = MagicMock()
    pool.connection.return_value.__enter__.return_value = conn
    return DocumentStore("postgresql://test", pool=pool)


def test_vector_literal():
    assert vector_literal([0.5, 1, -2.25]) == "[0.5,1.0,-2.25]"


def test_escape_like():
    assert escape_like("100%_off\\") == "100\\%\\_off\\\\"


def test_connection_errors_become_store_errors(store):
    store.pool.connection.side_effect = psycopg.OperationalError("connection refused")

    with pytest.raises(StoreError):
        store.get_stats()


def test_search_text_uses_escaped_pattern(conn, cursor):
    cursor.fetchall.return_value = [
        {"id": "f1", "document_id": "doc_a", "content": "50% off", "start_offset": 0, "end_offset": 7, "page": None}
    ]

    results = FragmentSession(conn).search_text("50% off", ["doc_a"], 10)

    sql, params = cursor.execute.call_args[0]
    assert "ILIKE" in sql
    assert params == (["doc_a"], "%50\\% off%", 10)
    assert [f.id for f in results] == ["f1"]


def test_nearest_orders_by_distance_inside_savepoint(conn, cursor):
    cursor.fetchall.return_value = []

    FragmentSession(conn).nearest([0.1, 0.2], ["doc_a"], 5)

    sql, params = cursor.execute.call_args[0]
    assert "embedding <-> %s::vector" in sql
    assert "embedding IS NOT NULL" in sql
    assert params == (["doc_a"], "[0.1,0.2]", 5)
    conn.transaction.assert_called_once()


def test_replace_fragments_falls_back_without_vectors(store, conn, cursor, make_fragment):
    cursor.executemany.side_effect = [psycopg.DataError("expected 1536 dimensions"), None]
    fragments = [make_fragment("f1", embedding=[0.1, 0.2]), make_fragment("f2", embedding=[0.3, 0.4])]

    store.replace_fragments("doc_a", fragments)

    assert cursor.execute.call_args[0][1] == ("doc_a",)
    assert cursor.executemany.call_count == 2
    first_rows = cursor.executemany.call_args_list[0][0][1]
    retry_rows = cursor.executemany.call_args_list[1][0][1]
    assert first_rows[0][7] == "[0.1,0.2]"
    assert [row[7] for row in retry_rows] == [None, None]
    assert [row[2] for row in retry_rows] == [0, 1]
    conn.commit.assert_called_once()


def test_replace_fragments_batches_of_twenty(store, cursor, make_fragment):
    fragments = [make_fragment(f"f{i}") for i in range(45)]

    store.replace_fragments("doc_a", fragments)

    batches = [len(c[0][1]) for c in cursor.executemany.call_args_list]
    assert batches == [20, 20, 5]
    assert cursor.executemany.call_args_list[2][0][1][0][2] == 40


def test_get_document_checks_owner(store, cursor):
    cursor.fetchone.return_value = {
        "id": "doc_a", "owner_id": "user-1", "name": "report.txt", "raw_text": "text",
        "addressable_markup": "<p></p>", "raw_path": None, "created_at": None,
    }

    assert store.get_document("doc_a", owner_id="user-1").name == "report.txt"
    with pytest.raises(NotFoundError):
        store.get_document("doc_a", owner_id="user-2")


def test_delete_missing_conversation_is_not_found(store, cursor):
    cursor.rowcount = 0

    with pytest.raises(NotFoundError):
        store.delete_conversation("c9", "user-1")


def test_add_message_records_attachments_and_sources(store, conn, cursor):
    cursor.fetchone.return_value = {
        "id": "m1", "conversation_id": "c1", "role": "ASSISTANT", "content": "answer", "created_at": None,
    }

    message = store.add_message("c1", Role.ASSISTANT, "answer", source_document_ids=["doc_a", "doc_b"])

    inserted_id = cursor.execute.call_args_list[0][0][1][0]
    assert message.role == Role.ASSISTANT
    assert message.source_document_ids == ["doc_a", "doc_b"]
    sql, rows = cursor.executemany.call_args[0]
    assert "message_source" in sql
    assert rows == [(inserted_id, "doc_a"), (inserted_id, "doc_b")]
    conn.commit.assert_called_once()


def test_upsert_document_reports_insert_and_keeps_markup(store, cursor):
    cursor.fetchone.return_value = (False,)

    created = store.upsert_document(Document(id="doc_a", owner_id="user-1", name="report.txt", raw_text="text"))

    sql = cursor.execute.call_args[0][0]
    update_clause = sql.split("DO UPDATE SET")[1]
    assert created is False
    assert "RETURNING (xmax = 0)" in sql
    assert "addressable_markup" not in update_clause


def test_replace_fragments_rolls_back_when_batch_cannot_be_written(store, conn, cursor, make_fragment):
    cursor.executemany.side_effect = psycopg.OperationalError("server closed the connection")
    fragments = [make_fragment("f1", embedding=[0.1, 0.2])]

    with pytest.raises(StoreError):
        store.replace_fragments("doc_a", fragments)

    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()
