import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    # fixed width so string comparison in SQL follows time order
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class ShareLinkRepository:
    def __init__(self, db_path: str):
        self.db_path = db_path

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS shared_links (
                    id TEXT PRIMARY KEY,
                    file_path TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    token TEXT NOT NULL UNIQUE,
                    created_by TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT,
                    password_hash TEXT,
                    max_downloads INTEGER,
                    download_count INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    last_accessed_at TEXT
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_shared_links_created_by ON shared_links(created_by)"
            )

    def token_exists(self, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM shared_links WHERE token = ?", (token,)).fetchone()
        return row is not None

    def insert_link(
        self,
        *,
        link_id: str,
        file_path: str,
        file_name: str,
        file_size: int,
        token: str,
        created_by: str,
        created_at: str,
        expires_at: str | None,
        password_hash: str | None,
        max_downloads: int | None,
    ) -> dict:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO shared_links(
                    id, file_path, file_name, file_size, token, created_by,
                    created_at, expires_at, password_hash, max_downloads
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    link_id,
                    file_path,
                    file_name,
                    file_size,
                    token,
                    created_by,
                    created_at,
                    expires_at,
                    password_hash,
                    max_downloads,
                ),
            )
            row = conn.execute("SELECT * FROM shared_links WHERE id = ?", (link_id,)).fetchone()
        return dict(row)

    def get_by_token(self, token: str) -> dict | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM shared_links WHERE token = ?", (token,)).fetchone()
        return dict(row) if row else None

    def list_by_creator(self, created_by: str) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM shared_links
                WHERE created_by = ?
                ORDER BY created_at DESC
                """,
                (created_by,),
            ).fetchall()
        return [dict(row) for row in rows]

    def increment_download_count(self, token: str, accessed_at: str) -> int:
        """Bump the counter in one statement; returns the number of rows hit."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE shared_links
                SET download_count = download_count + 1, last_accessed_at = ?
                WHERE token = ?
                """,
                (accessed_at, token),
            )
        return cursor.rowcount

    def deactivate(self, link_id: str, created_by: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE shared_links SET is_active = 0 WHERE id = ? AND created_by = ?",
                (link_id, created_by),
            )
        return cursor.rowcount

    def delete(self, link_id: str, created_by: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM shared_links WHERE id = ? AND created_by = ?",
                (link_id, created_by),
            )
        return cursor.rowcount

    def delete_expired(self, now: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM shared_links WHERE expires_at IS NOT NULL AND expires_at < ?",
                (now,),
            )
        return cursor.rowcount
