#!/usr/bin/env python3
"""
OCR Service - Backfills image clip content with recognized text
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Optional

from rapidocr import RapidOCR

from klip.errors import NotFoundError, OcrError
from klip.services.database_service import DatabaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OcrResult:
    """Text extracted for one image clip"""
    clip_id: str
    text: str


class RapidOcrEngine:
    """
    Multi-language text recognition backed by RapidOCR (PP-OCR models on
    onnxruntime). The model is loaded on first use.
    """

    def __init__(self, params: Optional[dict] = None):
        self.params = params
        self._engine = None
        self._load_lock = threading.Lock()

    def _get_engine(self):
        with self._load_lock:
            if self._engine is None:
                logger.info("Loading RapidOCR engine...")
                self._engine = RapidOCR(params=self.params) if self.params else RapidOCR()
                logger.info("RapidOCR engine loaded")
            return self._engine

    def recognize(self, image_path: str) -> str:
        """
        Recognize the text in an image file

        Returns:
            Recognized lines joined with newlines ("" when none are found)

        Raises:
            OcrError: If the engine could not process the image
        """
        try:
            result = self._get_engine()(image_path)
        except Exception as e:
            raise OcrError(f"Recognition failed for {image_path}: {e}") from e
        if result is None or not result.txts:
            return ""
        return "\n".join(result.txts)


class OcrService:
    """Service running OCR jobs on a small worker pool, one job per clip at a time"""

    def __init__(self, database_service: DatabaseService, engine=None, max_workers: int = 1):
        """
        Initialize OCR service

        Args:
            database_service: Clip store receiving the extracted text
            engine: Object with recognize(path) -> str (defaults to RapidOcrEngine)
            max_workers: Simultaneous OCR jobs
        """
        logger.info("[OcrService.__init__] Starting initialization...")
        self.db_service = database_service
        self.engine = engine or RapidOcrEngine()
        logger.info("[OcrService.__init__] Creating ThreadPoolExecutor...")
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ocr")
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._shut_down = False
        logger.info("[OcrService.__init__] Initialization complete")

    def is_pending(self, clip_id: str) -> bool:
        with self._lock:
            return clip_id in self._in_flight

    def submit(self, clip_id: str, image_path: str) -> Optional[Future]:
        """
        Queue text extraction for an image clip

        Args:
            clip_id: ID of an image clip
            image_path: Must equal the clip's stored image path

        Returns:
            Future resolving to an OcrResult, or None when a job for this clip
            is already pending

        Raises:
            NotFoundError: If the clip does not exist
            ValueError: If the clip is not an image or the path does not match
            OcrError: If the service has been shut down
        """
        clip = self.db_service.require_clip(clip_id)
        if clip.clip_type != "image":
            raise ValueError(f"Clip {clip_id} is not an image clip")
        if clip.image_path != image_path:
            raise ValueError(f"Image path {image_path} does not belong to clip {clip_id}")

        with self._lock:
            if self._shut_down:
                raise OcrError("OCR service is shut down")
            if clip_id in self._in_flight:
                logger.info(f"OCR already running for clip {clip_id}, ignoring duplicate request")
                return None
            future = self.executor.submit(self._run_job, clip_id, image_path)
            self._in_flight[clip_id] = future

        logger.info(f"Queued OCR for clip {clip_id}")
        return future

    def _run_job(self, clip_id: str, image_path: str) -> OcrResult:
        try:
            try:
                text = self.engine.recognize(image_path)
            except OcrError:
                raise
            except Exception as e:
                raise OcrError(f"Recognition failed for {image_path}: {e}") from e

            text = (text or "").strip()
            if text:
                self.db_service.update_content(clip_id, text)
                logger.info(f"✓ Extracted {len(text)} chars for clip {clip_id}")
            else:
                logger.info(f"No text found in image for clip {clip_id}")
            return OcrResult(clip_id=clip_id, text=text)
        except NotFoundError:
            logger.warning(f"Clip {clip_id} was deleted while OCR was running")
            raise
        except Exception as e:
            logger.error(f"OCR failed for clip {clip_id}: {e}")
            raise
        finally:
            with self._lock:
                self._in_flight.pop(clip_id, None)

    def shutdown(self, wait: bool = True):
        """Shutdown the executor, letting running jobs finish or abandoning queued ones"""
        with self._lock:
            self._shut_down = True
        self.executor.shutdown(wait=wait, cancel_futures=not wait)
