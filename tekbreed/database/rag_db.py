# database/rag_db.py
import sqlite3
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Optional, Any

from tekbreed.config import Config


class RagDatabase:
    """Documents and their embedded chunks for the learning assistant."""

    def __init__(self, db_path: str = None):
        self.db_path = Path(db_path or Config.RAG_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self):
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                source TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS document_chunks (
                id TEXT PRIMARY KEY,
                document_id TEXT NOT NULL,
                content TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                chunk_type TEXT DEFAULT 'text',
                embedding BLOB NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (document_id) REFERENCES documents (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_chunk_document ON document_chunks(document_id)")

        conn.commit()
        conn.close()

    def save_document(self, title: str, content: str, chunks: List[Dict[str, Any]], source: str = None) -> Dict:
        """
        Insert a document and its chunks in one transaction.

        Each chunk dict carries content, chunk_index, embedding (bytes) and
        metadata.
        """
        document_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO documents (id, title, content, source, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (document_id, title, content, source, now))

            for chunk in chunks:
                cursor.execute("""
                    INSERT INTO document_chunks (
                        id, document_id, content, chunk_index, chunk_type, embedding, metadata, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    str(uuid.uuid4()),
                    document_id,
                    chunk["content"],
                    chunk["chunk_index"],
                    chunk.get("chunk_type", "text"),
                    chunk["embedding"],
                    json.dumps(chunk.get("metadata") or {}),
                    now
                ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        return {"id": document_id, "title": title, "source": source, "created_at": now}

    def get_chunks(self, document_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """All chunks joined with their document title, optionally for one document."""
        query = """
            SELECT c.id, c.document_id, c.content, c.chunk_index, c.embedding, c.metadata,
                   d.title AS document_title
            FROM document_chunks c
            JOIN documents d ON d.id = c.document_id
        """
        params: List[Any] = []
        if document_id:
            query += " WHERE c.document_id = ?"
            params.append(document_id)
        query += " ORDER BY c.document_id, c.chunk_index"

        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(query, params)

        chunks = []
        for row in cursor.fetchall():
            chunks.append({
                "id": row["id"],
                "document_id": row["document_id"],
                "document_title": row["document_title"],
                "content": row["content"],
                "chunk_index": row["chunk_index"],
                "embedding": row["embedding"],
                "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
            })
        conn.close()
        return chunks

    def list_documents(self) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("""
            SELECT d.id, d.title, d.source, d.created_at, COUNT(c.id) AS chunk_count
            FROM documents d
            LEFT JOIN document_chunks c ON c.document_id = d.id
            GROUP BY d.id
            ORDER BY d.created_at DESC
        """)
        documents = [dict(row) for row in cursor.fetchall()]
        conn.close()
        return documents

    def delete_document(self, document_id: str) -> bool:
        conn = self._get_connection()
        try:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            affected = cursor.rowcount
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return affected > 0


# Singleton instance
_rag_db = None


def get_rag_db() -> RagDatabase:
    """Get or create the RAG database instance."""
    global _rag_db
    if _rag_db is None:
        _rag_db = RagDatabase()
    return _rag_db
