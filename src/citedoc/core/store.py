"""PostgreSQL (pgvector) persistence for documents, fragments and conversations."""

import uuid
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .errors import NotFoundError, StoreError
from .models import Conversation, Document, Fragment, Message, Role

logger = logging.getLogger(__name__)

FRAGMENT_INSERT_BATCH = 20

_FRAGMENT_COLUMNS = "id, document_id, content, start_offset, end_offset, page"


def vector_literal(embedding: Sequence[float]) -> str:
    """Render an embedding in pgvector's text input format."""
    return "[" + ",".join(repr(float(v)) for v in embedding) + "]"


def escape_like(text: str) -> str:
    """Escape LIKE metacharacters so a pattern matches the text literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_fragment(row: dict) -> Fragment:
    return Fragment(
        id=row["id"],
        document_id=row["document_id"],
        content=row["content"],
        start_offset=row.get("start_offset") or 0,
        end_offset=row.get("end_offset") or 0,
        page=row.get("page"),
    )


class FragmentSession:
    """Read-only fragment queries bound to one pooled connection."""

    def __init__(self, conn: psycopg.Connection):
        self.conn = conn

    def nearest(self, embedding: Sequence[float], document_ids: List[str], limit: int) -> List[Fragment]:
        """Fragments with embeddings, ordered by ascending L2 distance to ``embedding``."""
        # Savepoint so a failed vector query leaves the connection usable
        with self.conn.transaction():
            with self.conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"""
                    SELECT {_FRAGMENT_COLUMNS}
                    FROM fragment
                    WHERE document_id = ANY(%s) AND embedding IS NOT NULL
                    ORDER BY embedding <-> %s::vector
                    LIMIT %s
                """, (document_ids, vector_literal(embedding), limit))
                return [_row_to_fragment(row) for row in cur.fetchall()]

    def search_text(self, needle: str, document_ids: List[str], limit: int) -> List[Fragment]:
        """Case-insensitive substring match of ``needle`` against fragment content."""
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(f"""
                SELECT {_FRAGMENT_COLUMNS}
                FROM fragment
                WHERE document_id = ANY(%s)
                AND content ILIKE %s
                LIMIT %s
            """, (document_ids, f"%{escape_like(needle)}%", limit))
            return [_row_to_fragment(row) for row in cur.fetchall()]

    def sample(self, document_ids: List[str], limit: int) -> List[Fragment]:
        """Up to ``limit`` fragments of the given documents, in no particular order."""
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(f"""
                SELECT {_FRAGMENT_COLUMNS}
                FROM fragment
                WHERE document_id = ANY(%s)
                LIMIT %s
            """, (document_ids, limit))
            return [_row_to_fragment(row) for row in cur.fetchall()]


class DocumentStore:
    """Pooled access to the document/fragment/conversation tables."""

    def __init__(self, database_url: str, min_size: int = 1, max_size: int = 5,
                 pool: Optional[ConnectionPool] = None):
        self.database_url = database_url
        self.pool = pool or ConnectionPool(
            database_url, min_size=min_size, max_size=max_size, open=False
        )

    def open(self) -> None:
        self.pool.open()
        logger.info("Opened database connection pool")

    def close(self) -> None:
        self.pool.close()
        logger.info("Closed database connection pool")

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        """Borrow a connection for the duration of the block."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.Error as e:
            raise StoreError(f"Database operation failed: {e}") from e

    @contextmanager
    def session(self) -> Iterator[FragmentSession]:
        """Scoped fragment session; the connection goes back to the pool on exit."""
        with self.connection() as conn:
            yield FragmentSession(conn)

    # Documents

    def upsert_document(self, document: Document) -> bool:
        """
        Insert a document or refresh it on re-ingestion.

        The stored markup of an existing row is never overwritten here.

        Returns:
            True if a new row was inserted, False if an existing one was updated
        """
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO document (id, owner_id, name, raw_text, addressable_markup, raw_path)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        name = EXCLUDED.name,
                        raw_text = EXCLUDED.raw_text,
                        raw_path = EXCLUDED.raw_path
                    RETURNING (xmax = 0) AS inserted
                """, (
                    document.id,
                    document.owner_id,
                    document.name,
                    document.raw_text,
                    document.addressable_markup,
                    document.raw_path
                ))
                inserted = bool(cur.fetchone()[0])
            conn.commit()
        return inserted

    def update_markup(self, document_id: str, markup: str) -> None:
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE document SET addressable_markup = %s WHERE id = %s",
                    (markup, document_id)
                )
            conn.commit()

    def get_document(self, document_id: str, owner_id: Optional[str] = None) -> Document:
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT id, owner_id, name, raw_text, addressable_markup, raw_path, created_at
                    FROM document WHERE id = %s
                """, (document_id,))
                row = cur.fetchone()

        if not row or (owner_id is not None and row["owner_id"] != owner_id):
            raise NotFoundError(f"Document {document_id} not found")
        return Document(**row)

    def list_documents(self, owner_id: str) -> List[Document]:
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT id, owner_id, name, raw_path, created_at
                    FROM document WHERE owner_id = %s
                    ORDER BY created_at DESC
                """, (owner_id,))
                return [Document(**row) for row in cur.fetchall()]

    def delete_document(self, document_id: str) -> None:
        """Remove a document and its fragments (compensating cleanup)."""
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM fragment WHERE document_id = %s", (document_id,))
                cur.execute("DELETE FROM document WHERE id = %s", (document_id,))
            conn.commit()

    # Fragments

    def replace_fragments(self, document_id: str, fragments: Sequence[Fragment]) -> None:
        """
        Replace all fragment rows of a document in one transaction.

        Rows are written in batches; a batch whose vectors are rejected is
        written again without embeddings. If a batch cannot be written at all
        the transaction is rolled back and the previous rows stay in place.
        """
        with self.connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM fragment WHERE document_id = %s", (document_id,))

                for i in range(0, len(fragments), FRAGMENT_INSERT_BATCH):
                    batch = fragments[i:i + FRAGMENT_INSERT_BATCH]
                    try:
                        with conn.transaction():
                            self._insert_fragments(conn, batch, i, with_embeddings=True)
                    except psycopg.Error as e:
                        logger.warning(f"Fragment insert with vectors failed for {document_id}, storing without: {e}")
                        with conn.transaction():
                            self._insert_fragments(conn, batch, i, with_embeddings=False)
            except psycopg.Error:
                conn.rollback()
                raise

            conn.commit()
        logger.info(f"Stored {len(fragments)} fragments for document {document_id}")

    @staticmethod
    def _insert_fragments(conn: psycopg.Connection, batch: Sequence[Fragment], offset: int,
                          with_embeddings: bool) -> None:
        rows = [
            (
                fragment.id,
                fragment.document_id,
                offset + n,
                fragment.content,
                fragment.start_offset,
                fragment.end_offset,
                fragment.page,
                vector_literal(fragment.embedding) if with_embeddings and fragment.embedding else None,
            )
            for n, fragment in enumerate(batch)
        ]
        with conn.cursor() as cur:
            cur.executemany("""
                INSERT INTO fragment (id, document_id, ordinal, content, start_offset, end_offset, page, embedding)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s::vector)
            """, rows)

    def get_stats(self) -> dict:
        """Counts of documents and fragments, embedded or not."""
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM document")
                total_documents = cur.fetchone()[0]
                cur.execute("SELECT COUNT(*), COUNT(embedding) FROM fragment")
                total_fragments, embedded_fragments = cur.fetchone()

        return {
            "total_documents": total_documents,
            "total_fragments": total_fragments,
            "embedded_fragments": embedded_fragments,
            "keyword_only_fragments": total_fragments - embedded_fragments,
            "completion_rate": embedded_fragments / total_fragments if total_fragments > 0 else 0,
        }

    # Conversations

    def create_conversation(self, owner_id: str, title: Optional[str] = None) -> Conversation:
        conversation_id = uuid.uuid4().hex
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    INSERT INTO conversation (id, owner_id, title)
                    VALUES (%s, %s, %s)
                    RETURNING id, owner_id, title, created_at, updated_at
                """, (conversation_id, owner_id, title))
                row = cur.fetchone()
            conn.commit()
        return Conversation(**row)

    def get_conversation(self, conversation_id: str, owner_id: str, with_messages: bool = False) -> Conversation:
        """Fetch a conversation owned by ``owner_id`` or raise NotFoundError."""
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT id, owner_id, title, created_at, updated_at
                    FROM conversation WHERE id = %s AND owner_id = %s
                """, (conversation_id, owner_id))
                row = cur.fetchone()

        if not row:
            raise NotFoundError(f"Conversation {conversation_id} not found")

        conversation = Conversation(**row)
        if with_messages:
            conversation.messages = self.list_messages(conversation_id)
            conversation.message_count = len(conversation.messages)
        return conversation

    def list_conversations(self, owner_id: str) -> List[Conversation]:
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT c.id, c.owner_id, c.title, c.created_at, c.updated_at,
                           COUNT(m.id) AS message_count
                    FROM conversation c
                    LEFT JOIN message m ON m.conversation_id = c.id
                    WHERE c.owner_id = %s
                    GROUP BY c.id
                    ORDER BY c.updated_at DESC
                """, (owner_id,))
                return [Conversation(**row) for row in cur.fetchall()]

    def delete_conversation(self, conversation_id: str, owner_id: str) -> None:
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM conversation WHERE id = %s AND owner_id = %s",
                    (conversation_id, owner_id)
                )
                deleted = cur.rowcount
            conn.commit()
        if not deleted:
            raise NotFoundError(f"Conversation {conversation_id} not found")

    def list_messages(self, conversation_id: str) -> List[Message]:
        """Messages of a conversation in creation order, with attachments and sources."""
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT m.id, m.conversation_id, m.role, m.content, m.created_at,
                           COALESCE(ARRAY(
                               SELECT mf.document_id FROM message_file mf WHERE mf.message_id = m.id
                           ), '{}') AS attached_document_ids,
                           COALESCE(ARRAY(
                               SELECT ms.document_id FROM message_source ms WHERE ms.message_id = m.id
                           ), '{}') AS source_document_ids
                    FROM message m
                    WHERE m.conversation_id = %s
                    ORDER BY m.created_at ASC
                """, (conversation_id,))
                return [Message(**row) for row in cur.fetchall()]

    def add_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        attached_document_ids: Sequence[str] = (),
        source_document_ids: Sequence[str] = ()
    ) -> Message:
        """Append a message with its attached documents and cited sources."""
        message_id = uuid.uuid4().hex
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    INSERT INTO message (id, conversation_id, role, content)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id, conversation_id, role, content, created_at
                """, (message_id, conversation_id, role.value, content))
                row = cur.fetchone()
                if attached_document_ids:
                    cur.executemany(
                        "INSERT INTO message_file (message_id, document_id) VALUES (%s, %s)",
                        [(message_id, doc_id) for doc_id in attached_document_ids]
                    )
                if source_document_ids:
                    cur.executemany(
                        "INSERT INTO message_source (message_id, document_id) VALUES (%s, %s)",
                        [(message_id, doc_id) for doc_id in source_document_ids]
                    )
                cur.execute(
                    "UPDATE conversation SET updated_at = now() WHERE id = %s",
                    (conversation_id,)
                )
            conn.commit()

        return Message(
            **row,
            attached_document_ids=list(attached_document_ids),
            source_document_ids=list(source_document_ids)
        )
