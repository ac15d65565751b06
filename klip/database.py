#!/usr/bin/env python3
"""
Database layer for Klip
Handles SQLite storage of clips and user settings
"""

import hashlib
import logging
import sqlite3
import unicodedata
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from klip.errors import StorageError
from klip.models import Clip, clip_from_dict

logger = logging.getLogger(__name__)

CLIP_COLUMNS = "id, content, created_at, is_favorite, clip_type, image_path"


def format_timestamp(value: datetime) -> str:
    """
    Canonical storage form of a timestamp: UTC, ISO 8601, microseconds.
    A fixed width keeps lexical order equal to chronological order.
    """
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class ClipDB:
    """SQLite database for clips"""

    def __init__(self, db_path: str = None):
        if db_path is None:
            # Default to ~/.local/share/klip/clips.db
            db_dir = Path.home() / ".local" / "share" / "klip"
            db_dir.mkdir(parents=True, exist_ok=True)
            db_path = db_dir / "clips.db"

        self.db_path = str(db_path)
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                self.conn.execute("PRAGMA journal_mode=WAL")
            self._init_db()
        except sqlite3.Error as e:
            raise self._storage_error(e) from e

    def _init_db(self):
        """Initialize database schema"""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS clips (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL DEFAULT '',
                search_content TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                is_favorite INTEGER NOT NULL DEFAULT 0,
                clip_type TEXT NOT NULL DEFAULT 'text'
                    CHECK (clip_type IN ('text', 'image')),
                image_path TEXT,
                fingerprint TEXT,
                CHECK ((clip_type = 'image') = (image_path IS NOT NULL))
            )
        """
        )

        # Migrations for databases created before these columns existed
        cursor.execute("PRAGMA table_info(clips)")
        columns = [col[1] for col in cursor.fetchall()]
        if "clip_type" not in columns:
            cursor.execute("ALTER TABLE clips ADD COLUMN clip_type TEXT NOT NULL DEFAULT 'text'")
            logger.info("Added clip_type column to existing database")
        if "image_path" not in columns:
            cursor.execute("ALTER TABLE clips ADD COLUMN image_path TEXT")
            logger.info("Added image_path column to existing database")
        if "search_content" not in columns:
            cursor.execute("ALTER TABLE clips ADD COLUMN search_content TEXT NOT NULL DEFAULT ''")
            logger.info("Added search_content column to existing database")
            self._migrate_search_content()
        if "fingerprint" not in columns:
            cursor.execute("ALTER TABLE clips ADD COLUMN fingerprint TEXT")
            logger.info("Added fingerprint column to existing database")
            self._migrate_calculate_fingerprints()

        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_clips_created_at
            ON clips(created_at DESC)
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_clips_retention
            ON clips(is_favorite, created_at)
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """
        )

        self.conn.commit()
        logger.info(f"Database initialized or already exists at: {self.db_path}")

    @staticmethod
    def calculate_fingerprint(data: bytes) -> str:
        """
        Calculate SHA256 fingerprint of clip data
        Returns hex digest (64 characters)
        """
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def normalize_search_text(text: str) -> str:
        """Fold accents and case so 'Café' is found by 'cafe'"""
        decomposed = unicodedata.normalize("NFKD", text)
        stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
        return stripped.casefold()

    @staticmethod
    def _storage_error(error: sqlite3.Error) -> StorageError:
        # SQLITE_CORRUPT and SQLITE_NOTADB surface as the bare DatabaseError class
        corrupt = type(error) in (sqlite3.DatabaseError, sqlite3.InternalError)
        return StorageError(f"Database error: {error}", corrupt=corrupt)

    @contextmanager
    def _transaction(self):
        """Run the enclosed statements as one transaction"""
        try:
            with self.conn:
                cursor = self.conn.cursor()
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
        except sqlite3.Error as e:
            raise self._storage_error(e) from e

    def _fetchall(self, sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise self._storage_error(e) from e

    def _fetchone(self, sql: str, params: Iterable = ()) -> Optional[sqlite3.Row]:
        try:
            return self.conn.execute(sql, tuple(params)).fetchone()
        except sqlite3.Error as e:
            raise self._storage_error(e) from e

    @staticmethod
    def _row_to_clip(row: sqlite3.Row) -> Clip:
        return clip_from_dict(
            {
                "id": row["id"],
                "content": row["content"],
                "created_at": row["created_at"],
                "is_favorite": bool(row["is_favorite"]),
                "clip_type": row["clip_type"],
                "image_path": row["image_path"],
            }
        )

    def _migrate_search_content(self):
        """Backfill search_content for existing rows"""
        cursor = self.conn.cursor()
        cursor.execute("SELECT id, content FROM clips")
        rows = cursor.fetchall()
        for row in rows:
            cursor.execute(
                "UPDATE clips SET search_content = ? WHERE id = ?",
                (self.normalize_search_text(row["content"]), row["id"]),
            )
        if rows:
            self.conn.commit()
            logger.info(f"Normalized search content for {len(rows)} existing clips")

    def _migrate_calculate_fingerprints(self):
        """Calculate fingerprints for existing clips"""
        cursor = self.conn.cursor()
        cursor.execute("SELECT id, content, clip_type, image_path FROM clips WHERE fingerprint IS NULL")
        rows = cursor.fetchall()
        for row in rows:
            if row["clip_type"] == "image":
                try:
                    data = Path(row["image_path"]).read_bytes()
                except (OSError, TypeError) as e:
                    logger.warning(f"Could not fingerprint image for clip {row['id']}: {e}")
                    continue
            else:
                data = row["content"].encode("utf-8")
            cursor.execute(
                "UPDATE clips SET fingerprint = ? WHERE id = ?",
                (self.calculate_fingerprint(data), row["id"]),
            )
        if rows:
            self.conn.commit()
            logger.info(f"Calculated fingerprints for {len(rows)} existing clips")

    def insert_clip(self, clip: Clip, fingerprint: str = None) -> str:
        """
        Add a clip to the database

        Args:
            clip: The clip to persist (text or image variant)
            fingerprint: Optional pre-calculated fingerprint (calculated for text if not provided)

        Returns:
            The ID of the inserted clip
        """
        if fingerprint is None and clip.clip_type == "text":
            fingerprint = self.calculate_fingerprint(clip.content.encode("utf-8"))

        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO clips (id, content, search_content, created_at, is_favorite, clip_type, image_path, fingerprint)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    clip.id,
                    clip.content,
                    self.normalize_search_text(clip.content),
                    format_timestamp(clip.created_at),
                    1 if clip.is_favorite else 0,
                    clip.clip_type,
                    getattr(clip, "image_path", None),
                    fingerprint,
                ),
            )

        logger.debug(f"Added clip to DB: ID={clip.id}, Type={clip.clip_type}, Created={clip.created_at}")
        return clip.id

    def get_clip(self, clip_id: str) -> Optional[Clip]:
        """Get a single clip by ID"""
        row = self._fetchone(f"SELECT {CLIP_COLUMNS} FROM clips WHERE id = ?", (clip_id,))
        return self._row_to_clip(row) if row else None

    def get_latest_fingerprint(self) -> Optional[str]:
        """Fingerprint of the most recently inserted clip"""
        row = self._fetchone("SELECT fingerprint FROM clips ORDER BY rowid DESC LIMIT 1")
        return row["fingerprint"] if row else None

    def get_latest_created_at(self) -> Optional[datetime]:
        row = self._fetchone("SELECT MAX(created_at) AS latest FROM clips")
        if row is None or row["latest"] is None:
            return None
        return datetime.fromisoformat(row["latest"])

    def get_total_count(self) -> int:
        """Get total count of clips"""
        row = self._fetchone("SELECT COUNT(*) AS count FROM clips")
        return row["count"] if row else 0

    def update_content(self, clip_id: str, content: str) -> bool:
        """
        Replace the content of a clip

        Returns:
            True if updated, False if the clip does not exist
        """
        with self._transaction() as cursor:
            cursor.execute("SELECT clip_type FROM clips WHERE id = ?", (clip_id,))
            row = cursor.fetchone()
            if row is None:
                return False
            if row["clip_type"] == "text":
                if not content:
                    raise ValueError("text clips cannot have empty content")
                cursor.execute(
                    "UPDATE clips SET content = ?, search_content = ?, fingerprint = ? WHERE id = ?",
                    (
                        content,
                        self.normalize_search_text(content),
                        self.calculate_fingerprint(content.encode("utf-8")),
                        clip_id,
                    ),
                )
            else:
                cursor.execute(
                    "UPDATE clips SET content = ?, search_content = ? WHERE id = ?",
                    (content, self.normalize_search_text(content), clip_id),
                )
            return cursor.rowcount > 0

    def set_favorite(self, clip_id: str, is_favorite: bool) -> bool:
        """Set the favorite flag of a clip"""
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE clips SET is_favorite = ? WHERE id = ?",
                (1 if is_favorite else 0, clip_id),
            )
            return cursor.rowcount > 0

    def delete_clip(self, clip_id: str) -> Optional[Clip]:
        """
        Delete a clip by ID

        Returns:
            The deleted clip (so the caller can release its image file), or None
        """
        with self._transaction() as cursor:
            cursor.execute(f"SELECT {CLIP_COLUMNS} FROM clips WHERE id = ?", (clip_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            cursor.execute("DELETE FROM clips WHERE id = ?", (clip_id,))
        return self._row_to_clip(row)

    def delete_clips(self, clip_ids: List[str]) -> int:
        """Delete several clips in one transaction"""
        if not clip_ids:
            return 0
        placeholders = ",".join("?" * len(clip_ids))
        with self._transaction() as cursor:
            cursor.execute(f"DELETE FROM clips WHERE id IN ({placeholders})", tuple(clip_ids))
            return cursor.rowcount

    def delete_expired(self, cutoff: datetime) -> List[Clip]:
        """
        Delete every non-favorite clip created before cutoff

        Returns:
            The deleted clips
        """
        cutoff_str = format_timestamp(cutoff)
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {CLIP_COLUMNS} FROM clips WHERE is_favorite = 0 AND created_at < ?",
                (cutoff_str,),
            )
            rows = cursor.fetchall()
            cursor.execute(
                "DELETE FROM clips WHERE is_favorite = 0 AND created_at < ?",
                (cutoff_str,),
            )
        return [self._row_to_clip(row) for row in rows]

    def query_clips(
        self,
        search_text: Optional[str] = None,
        date_filter: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> List[Clip]:
        """
        Get clips sorted newest first

        Args:
            search_text: Case- and accent-insensitive substring to look for in content
            date_filter: Only clips created on this local calendar date
            limit: Maximum number of clips to return

        Returns:
            List of clips
        """
        where_clauses = []
        query_params = []

        if search_text:
            where_clauses.append("instr(search_content, ?) > 0")
            query_params.append(self.normalize_search_text(search_text))

        if date_filter is not None:
            where_clauses.append("date(created_at, 'localtime') = ?")
            query_params.append(date_filter.isoformat())

        where_clause = ""
        if where_clauses:
            where_clause = "WHERE " + " AND ".join(where_clauses)

        query = f"""
            SELECT {CLIP_COLUMNS}
            FROM clips
            {where_clause}
            ORDER BY created_at DESC, rowid DESC
        """
        if limit is not None:
            query += " LIMIT ?"
            query_params.append(limit)

        return [self._row_to_clip(row) for row in self._fetchall(query, query_params)]

    def list_distinct_dates(self) -> List[date]:
        """All local calendar dates with at least one clip, newest first"""
        rows = self._fetchall(
            """
            SELECT DISTINCT date(created_at, 'localtime') AS day
            FROM clips
            WHERE date(created_at, 'localtime') IS NOT NULL
            ORDER BY day DESC
        """
        )
        return [date.fromisoformat(row["day"]) for row in rows]

    def list_image_paths(self) -> List[Tuple[str, str]]:
        """(id, image_path) for every image clip"""
        rows = self._fetchall("SELECT id, image_path FROM clips WHERE clip_type = 'image'")
        return [(row["id"], row["image_path"]) for row in rows]

    def get_setting(self, key: str) -> Optional[str]:
        row = self._fetchone("SELECT value FROM settings WHERE key = ?", (key,))
        return row["value"] if row else None

    def set_setting(self, key: str, value: str):
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
                (key, value),
            )

    def quick_check(self) -> bool:
        """Run SQLite's quick integrity check"""
        row = self._fetchone("PRAGMA quick_check")
        return row is not None and row[0] == "ok"

    def close(self):
        """Close database connection"""
        self.conn.close()
