#!/usr/bin/env python3
"""
Retention Service - Periodic eviction of expired clips
"""
import logging
import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from klip.models import utc_now
from klip.services.database_service import DatabaseService
from klip.services.settings_service import SettingsService

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Outcome of one retention sweep"""
    cutoff: datetime
    deleted_ids: List[str] = field(default_factory=list)
    orphans_removed: int = 0
    dangling_removed: int = 0


class RetentionService:
    """Service for evicting non-favorite clips older than retention_days"""

    def __init__(self, database_service: DatabaseService, settings_service: SettingsService,
                 interval_seconds: int = 3600):
        """
        Initialize retention service

        Args:
            database_service: Clip store to sweep
            settings_service: Source of retention_days, read on every sweep
            interval_seconds: Seconds between scheduled sweeps
        """
        logger.info("[RetentionService.__init__] Starting initialization...")
        self.db_service = database_service
        self.settings_service = settings_service
        self.interval = interval_seconds
        self._stop = threading.Event()
        self.worker_thread: Optional[threading.Thread] = None
        logger.info("[RetentionService.__init__] Initialization complete")

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run one retention sweep

        Reconciles the image area first, so files orphaned by an interrupted
        earlier sweep are collected, then deletes expired clips.

        Args:
            now: Reference time (defaults to the current time)
        """
        if now is None:
            now = utc_now()
        retention_days = self.settings_service.retention_days
        cutoff = now - timedelta(days=retention_days)

        reconciled = self.db_service.reconcile()
        deleted_ids = self.db_service.delete_expired(cutoff)

        report = SweepReport(
            cutoff=cutoff,
            deleted_ids=deleted_ids,
            orphans_removed=len(reconciled.orphaned_files),
            dangling_removed=len(reconciled.dangling_clips),
        )
        if deleted_ids:
            logger.info(f"🧹 Retention sweep removed {len(deleted_ids)} clips older than {retention_days} days")
        else:
            logger.debug(f"Retention sweep found nothing older than {retention_days} days")
        return report

    def start(self):
        """Sweep once now, then on a timer"""
        if self.worker_thread and self.worker_thread.is_alive():
            logger.warning("Retention worker already running")
            return
        self._stop.clear()
        self.worker_thread = threading.Thread(target=self._worker, name="retention", daemon=True)
        self.worker_thread.start()
        logger.info(f"Retention worker started (interval: {self.interval}s)")

    def _worker(self):
        """Background thread that sweeps at regular intervals"""
        while not self._stop.is_set():
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Retention sweep failed: {e}")
                logger.error(traceback.format_exc())
            self._stop.wait(self.interval)

    def stop(self):
        """Stop the retention worker"""
        self._stop.set()
        if self.worker_thread:
            self.worker_thread.join(timeout=5.0)
            self.worker_thread = None
        logger.info("Retention worker stopped")
