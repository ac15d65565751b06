#!/usr/bin/env python3
"""
Clipboard Service - Watches the OS clipboard and captures new clips
"""
import logging
import threading
import traceback
from pathlib import Path
from typing import Optional

from klip.errors import CaptureError, NotFoundError
from klip.services.database_service import DatabaseService
from klip.services.system_clipboard import SystemClipboard

logger = logging.getLogger(__name__)


class ClipboardService:
    """
    Service for capturing clipboard changes

    Content is deduplicated against the immediately preceding capture only:
    copying "a", "b", "a" stores three clips, copying "a", "a" stores one.
    """

    def __init__(self, database_service: DatabaseService, clipboard=None,
                 poll_interval: float = 1.0, capture_images: bool = False):
        """
        Initialize clipboard service

        Args:
            database_service: Database service for storing clips
            clipboard: OS clipboard access (defaults to SystemClipboard)
            poll_interval: Seconds between clipboard polls
            capture_images: Capture raster images as well as text
        """
        logger.info("[ClipboardService.__init__] Starting initialization...")
        self.db_service = database_service
        self.clipboard = clipboard or SystemClipboard()
        self.poll_interval = poll_interval
        self.capture_images = capture_images
        self._last_fingerprint: Optional[str] = None
        self._seeded = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        logger.info(f"[ClipboardService.__init__] Image capture {'enabled' if capture_images else 'disabled'}")
        logger.info("[ClipboardService.__init__] Initialization complete")

    def _seed_last_fingerprint(self):
        """Treat the newest stored clip as the preceding capture"""
        if not self._seeded:
            self._last_fingerprint = self.db_service.get_latest_fingerprint()
            self._seeded = True

    def poll_once(self) -> Optional[str]:
        """
        Check the clipboard once and capture it if it changed

        Returns:
            ID of the new clip, or None if nothing was captured

        Raises:
            CaptureError: If the clipboard text could not be read
        """
        self._seed_last_fingerprint()

        if self.capture_images:
            # A failed image read must not block text capture
            try:
                image_bytes = self.clipboard.read_image()
            except CaptureError as e:
                logger.warning(f"⚠ Clipboard image read failed, trying text: {e}")
                image_bytes = None
            if image_bytes:
                return self._handle_image(image_bytes)

        text = self.clipboard.read_text()
        if not text or not text.strip():
            return None
        return self._handle_text(text)

    def _handle_text(self, text: str) -> Optional[str]:
        """Handle text clipboard content"""
        text_hash = self.db_service.calculate_fingerprint(text.encode("utf-8"))
        if text_hash == self._last_fingerprint:
            logger.debug(f"↻ Skipping unchanged text ({len(text)} chars)")
            return None

        clip_id = self.db_service.add_text_clip(text, fingerprint=text_hash)
        self._last_fingerprint = text_hash
        logger.info(f"✓ Copied text ({len(text)} chars)")
        return clip_id

    def _handle_image(self, image_bytes: bytes) -> Optional[str]:
        """Handle image clipboard content"""
        image_hash = self.db_service.calculate_fingerprint(image_bytes)
        if image_hash == self._last_fingerprint:
            logger.debug(f"↻ Skipping unchanged image ({len(image_bytes)} bytes)")
            return None

        clip_id = self.db_service.add_image_clip(image_bytes, fingerprint=image_hash)
        self._last_fingerprint = image_hash
        logger.info(f"✓ Copied image ({len(image_bytes)} bytes)")
        return clip_id

    def copy_to_clipboard(self, text: str):
        """Write text to the OS clipboard without capturing it again"""
        self.clipboard.write_text(text)
        self._last_fingerprint = self.db_service.calculate_fingerprint(text.encode("utf-8"))
        self._seeded = True
        logger.info(f"Copied {len(text)} chars to clipboard")

    def copy_image_to_clipboard(self, image_path: str):
        """Write an image file to the OS clipboard without capturing it again"""
        path = Path(image_path)
        if not path.is_file():
            raise NotFoundError(image_path, f"Image file not found: {image_path}")
        self.clipboard.write_image(str(path))
        self._last_fingerprint = self.db_service.calculate_fingerprint(path.read_bytes())
        self._seeded = True
        logger.info(f"Copied image {path.name} to clipboard")

    def start(self):
        """Start the polling thread"""
        if self._thread and self._thread.is_alive():
            logger.warning("Clipboard watcher already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._worker, name="clipboard-watcher", daemon=True)
        self._thread.start()
        logger.info(f"Clipboard watcher started (polling every {self.poll_interval}s)")

    def _worker(self):
        """Poll until stopped, surviving any single failure"""
        while not self._stop.is_set():
            try:
                self.poll_once()
            except CaptureError as e:
                logger.warning(f"⚠ Clipboard read failed, retrying next tick: {e}")
            except Exception as e:
                logger.error(f"Error in clipboard watcher: {e}")
                logger.error(traceback.format_exc())
            self._stop.wait(self.poll_interval)

    def stop(self):
        """Stop the polling thread"""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=max(2.0, self.poll_interval * 2))
            self._thread = None
        logger.info("Clipboard watcher stopped")
