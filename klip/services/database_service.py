#!/usr/bin/env python3
"""
Database Service - Clip store with thread-safety and image file ownership
"""
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Callable, List, Optional

from klip.database import ClipDB
from klip.errors import NotFoundError, StorageError
from klip.models import Clip, ImageClip, TextClip, new_clip_id, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """Outcome of a store reconciliation"""
    orphaned_files: List[str] = field(default_factory=list)
    dangling_clips: List[str] = field(default_factory=list)


class DatabaseService:
    """
    Single owner of clip records and the image files they reference.

    Every operation runs under one lock around one SQLite connection, and
    every write is a transaction, so readers only ever see committed
    state. Successful mutations raise a change notification.
    """

    def __init__(self, db_path: Optional[str] = None, images_dir: Optional[Path] = None,
                 notifier=None):
        """
        Initialize database service

        Args:
            db_path: Optional path to database file
            images_dir: Directory for image files owned by the store
            notifier: Optional notification service fired after each mutation
        """
        logger.info("[DatabaseService.__init__] Starting initialization...")
        logger.info(f"[DatabaseService.__init__] Connecting to database: {db_path or 'default path'}")
        self.db = ClipDB(db_path)
        self.lock = threading.Lock()
        self.notifier = notifier
        if images_dir is None:
            images_dir = Path.home() / ".local" / "share" / "klip" / "images"
        self.images_dir = Path(images_dir)
        self.images_dir.mkdir(parents=True, exist_ok=True)
        self._write_blocked = False
        self._last_created_at: Optional[datetime] = self.db.get_latest_created_at()
        logger.info(f"[DatabaseService.__init__] Image files stored in: {self.images_dir}")
        logger.info("[DatabaseService.__init__] Initialization complete")

    @property
    def write_blocked(self) -> bool:
        """True after corruption was detected, until reconcile() succeeds"""
        return self._write_blocked

    def _notify(self):
        if self.notifier is not None:
            self.notifier.notify()

    def _write(self, operation: Callable, *args, **kwargs):
        """Run a write under the lock, tracking corruption"""
        with self.lock:
            if self._write_blocked:
                raise StorageError("Clip store is refusing writes until reconciled", corrupt=True)
            try:
                return operation(*args, **kwargs)
            except StorageError as e:
                if e.corrupt:
                    self._write_blocked = True
                    logger.critical(f"Clip database looks corrupt, writes disabled: {e}")
                raise

    def _read(self, operation: Callable, *args, **kwargs):
        with self.lock:
            return operation(*args, **kwargs)

    def _next_timestamp(self) -> datetime:
        """Capture time, clamped so it never goes backwards. Call with the lock held."""
        now = utc_now()
        if self._last_created_at is not None and now < self._last_created_at:
            now = self._last_created_at
        self._last_created_at = now
        return now

    def _track_created_at(self, created_at: datetime):
        if self._last_created_at is None or created_at > self._last_created_at:
            self._last_created_at = created_at

    def _remove_image_file(self, clip: Clip):
        if clip.clip_type != "image":
            return
        try:
            Path(clip.image_path).unlink(missing_ok=True)
        except OSError as e:
            # Left for the next reconcile() to collect
            logger.warning(f"Could not remove image file {clip.image_path}: {e}")

    def insert(self, clip: Clip, fingerprint: Optional[str] = None) -> str:
        """Thread-safe insert of a fully built clip"""

        def _insert():
            clip_id = self.db.insert_clip(clip, fingerprint)
            self._track_created_at(clip.created_at)
            return clip_id

        clip_id = self._write(_insert)
        self._notify()
        return clip_id

    def add_text_clip(self, text: str, fingerprint: Optional[str] = None) -> str:
        """Thread-safe capture of a new text clip"""

        def _add():
            clip = TextClip(content=text, created_at=self._next_timestamp())
            return self.db.insert_clip(clip, fingerprint)

        clip_id = self._write(_add)
        self._notify()
        return clip_id

    def add_image_clip(self, image_data: bytes, fingerprint: Optional[str] = None) -> str:
        """
        Thread-safe capture of a new image clip

        Args:
            image_data: PNG bytes, written to <images_dir>/<id>.png
            fingerprint: Optional pre-calculated fingerprint of image_data

        Returns:
            The ID of the new clip
        """
        if fingerprint is None:
            fingerprint = self.calculate_fingerprint(image_data)

        def _add():
            clip_id = new_clip_id()
            image_path = self.images_dir / f"{clip_id}.png"
            temp_path = self.images_dir / f"{clip_id}.png.tmp"
            try:
                temp_path.write_bytes(image_data)
                os.replace(temp_path, image_path)
            except OSError as e:
                temp_path.unlink(missing_ok=True)
                raise StorageError(f"Could not write image file {image_path}: {e}") from e

            clip = ImageClip(id=clip_id, image_path=str(image_path), created_at=self._next_timestamp())
            try:
                return self.db.insert_clip(clip, fingerprint)
            except Exception:
                image_path.unlink(missing_ok=True)
                raise

        clip_id = self._write(_add)
        self._notify()
        return clip_id

    def get_clip(self, clip_id: str) -> Optional[Clip]:
        """Thread-safe get clip from database"""
        return self._read(self.db.get_clip, clip_id)

    def require_clip(self, clip_id: str) -> Clip:
        """Get a clip or raise NotFoundError"""
        clip = self.get_clip(clip_id)
        if clip is None:
            raise NotFoundError(clip_id)
        return clip

    def delete_clip(self, clip_id: str):
        """Thread-safe delete of a clip and its image file"""
        deleted = self._write(self.db.delete_clip, clip_id)
        if deleted is None:
            raise NotFoundError(clip_id)
        self._remove_image_file(deleted)
        logger.info(f"Deleted clip {clip_id} ({deleted.clip_type})")
        self._notify()

    def update_content(self, clip_id: str, content: str):
        """Thread-safe replace of clip content"""
        updated = self._write(self.db.update_content, clip_id, content)
        if not updated:
            raise NotFoundError(clip_id)
        self._notify()

    def toggle_favorite(self, clip_id: str, is_favorite: Optional[bool] = None) -> bool:
        """
        Thread-safe favorite toggle

        Args:
            clip_id: ID of the clip
            is_favorite: New state, or None to flip the current one

        Returns:
            The favorite state after the change
        """

        def _toggle():
            clip = self.db.get_clip(clip_id)
            if clip is None:
                raise NotFoundError(clip_id)
            new_value = (not clip.is_favorite) if is_favorite is None else bool(is_favorite)
            self.db.set_favorite(clip_id, new_value)
            return new_value

        new_value = self._write(_toggle)
        self._notify()
        return new_value

    def query(self, search_text: Optional[str] = None, date_filter: Optional[date] = None,
              limit: Optional[int] = None) -> List[Clip]:
        """Thread-safe filtered listing, newest first"""
        return self._read(self.db.query_clips, search_text, date_filter, limit)

    def list_distinct_dates(self) -> List[date]:
        """Thread-safe date facet"""
        return self._read(self.db.list_distinct_dates)

    def get_latest_fingerprint(self) -> Optional[str]:
        """Thread-safe fingerprint of the latest capture"""
        return self._read(self.db.get_latest_fingerprint)

    def get_total_count(self) -> int:
        """Thread-safe get total clip count"""
        return self._read(self.db.get_total_count)

    def delete_expired(self, cutoff: datetime) -> List[str]:
        """
        Thread-safe retention delete

        Records go first, in one transaction; files follow. A crash between
        the two leaves orphaned files that reconcile() removes.

        Returns:
            IDs of the deleted clips
        """
        deleted = self._write(self.db.delete_expired, cutoff)
        for clip in deleted:
            self._remove_image_file(clip)
        if deleted:
            self._notify()
        return [clip.id for clip in deleted]

    def reconcile(self) -> ReconcileReport:
        """
        Check integrity and bring records and image files back in line

        Lifts the write block when the integrity check passes, removes image
        files no record references, and removes image records whose file is
        gone.
        """
        report = ReconcileReport()
        with self.lock:
            try:
                healthy = self.db.quick_check()
            except StorageError as e:
                if e.corrupt:
                    self._write_blocked = True
                raise
            if not healthy:
                self._write_blocked = True
                raise StorageError("Clip database failed integrity check", corrupt=True)
            if self._write_blocked:
                logger.info("Integrity check passed, clip store accepts writes again")
                self._write_blocked = False

            image_paths = self.db.list_image_paths()
            report.dangling_clips = [clip_id for clip_id, path in image_paths if not Path(path).exists()]
            if report.dangling_clips:
                self.db.delete_clips(report.dangling_clips)
                logger.warning(f"Removed {len(report.dangling_clips)} image clips with missing files")

            referenced = {Path(path).resolve() for _, path in image_paths}
            for entry in self.images_dir.iterdir():
                if entry.is_file() and entry.resolve() not in referenced:
                    try:
                        entry.unlink()
                        report.orphaned_files.append(str(entry))
                    except OSError as e:
                        logger.warning(f"Could not remove orphaned image file {entry}: {e}")
            if report.orphaned_files:
                logger.info(f"Removed {len(report.orphaned_files)} orphaned image files")

        if report.dangling_clips:
            self._notify()
        return report

    def get_setting(self, key: str) -> Optional[str]:
        """Thread-safe raw setting read"""
        return self._read(self.db.get_setting, key)

    def set_setting(self, key: str, value: str):
        """Thread-safe raw setting write"""
        self._write(self.db.set_setting, key, value)

    def close(self):
        """Close the database connection"""
        with self.lock:
            self.db.close()

    @staticmethod
    def calculate_fingerprint(data: bytes) -> str:
        """Calculate fingerprint for deduplication"""
        return ClipDB.calculate_fingerprint(data)
