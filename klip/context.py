#!/usr/bin/env python3
"""
Application context - builds every service once and tears them down in reverse
"""
import logging

from klip.config import ConfigManager
from klip.services.clipboard_service import ClipboardService
from klip.services.database_service import DatabaseService
from klip.services.notification_service import NotificationService
from klip.services.ocr_service import OcrService
from klip.services.query_service import QueryService
from klip.services.retention_service import RetentionService
from klip.services.settings_service import SettingsService
from klip.services.websocket_service import WebSocketService

logger = logging.getLogger(__name__)


class AppContext:
    """Process-scoped container owning the services"""

    def __init__(self, config: ConfigManager, clipboard=None, ocr_engine=None):
        """
        Initialize services in dependency order

        Args:
            config: Process configuration
            clipboard: Optional OS clipboard access (defaults to SystemClipboard)
            ocr_engine: Optional OCR engine (defaults to RapidOcrEngine)
        """
        logger.info("Initializing services...")
        self.config = config
        config.data_dir.mkdir(parents=True, exist_ok=True)

        self.notification_service = NotificationService(tick=config.notifier_tick)
        self.database_service = DatabaseService(
            str(config.db_path),
            images_dir=config.images_dir,
            notifier=self.notification_service,
        )
        self.settings_service = SettingsService(self.database_service)
        self.query_service = QueryService(self.database_service)
        self.clipboard_service = ClipboardService(
            self.database_service,
            clipboard=clipboard,
            poll_interval=config.poll_interval,
            capture_images=config.capture_images,
        )
        self.retention_service = RetentionService(
            self.database_service,
            self.settings_service,
            interval_seconds=config.sweep_interval_seconds,
        )
        self.ocr_service = OcrService(
            self.database_service,
            engine=ocr_engine,
            max_workers=config.ocr_max_workers,
        )
        self.websocket_service = WebSocketService(
            self.database_service,
            self.query_service,
            self.settings_service,
            self.clipboard_service,
            self.ocr_service,
            notification_service=self.notification_service,
        )
        self._started = False
        logger.info("All services initialized successfully")

    def start(self):
        """Start the background loops"""
        if self._started:
            return
        self.notification_service.start()
        self.retention_service.start()
        self.clipboard_service.start()
        self._started = True

    def close(self, wait_for_ocr: bool = False):
        """Stop everything in reverse order of construction"""
        logger.info("Shutting down services...")
        steps = [
            ("websocket", self.websocket_service.close),
            ("ocr", lambda: self.ocr_service.shutdown(wait=wait_for_ocr)),
            ("retention", self.retention_service.stop),
            ("clipboard watcher", self.clipboard_service.stop),
            ("notifier", self.notification_service.stop),
            ("database", self.database_service.close),
        ]
        for name, step in steps:
            try:
                step()
            except Exception as e:
                logger.error(f"Error shutting down {name} service: {e}")
        self._started = False
        logger.info("Shutdown complete")
