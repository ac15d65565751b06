#!/usr/bin/env python3
"""
Error types shared by the Klip services
"""
from typing import Optional


class KlipError(Exception):
    """Base class for all Klip errors"""


class CaptureError(KlipError):
    """The OS clipboard could not be read. Transient, retried on the next tick."""


class ClipboardWriteError(KlipError):
    """The OS clipboard could not be written"""


class StorageError(KlipError):
    """The clip database is unreachable or corrupt"""

    def __init__(self, message: str, corrupt: bool = False):
        super().__init__(message)
        self.corrupt = corrupt


class NotFoundError(KlipError):
    """An operation targeted a clip that does not exist"""

    def __init__(self, clip_id: Optional[str], message: Optional[str] = None):
        super().__init__(message or f"Clip not found: {clip_id}")
        self.clip_id = clip_id


class OcrError(KlipError):
    """The recognition engine failed on an image"""
