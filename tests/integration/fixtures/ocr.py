"""Fake OCR engines for tests."""

import threading
from typing import Dict, List, Optional

from klip.errors import OcrError


class FakeOcrEngine:
    """OCR engine returning canned text per image path."""

    def __init__(self, results: Optional[Dict[str, str]] = None, default: str = ""):
        self.results = results or {}
        self.default = default
        self.calls: List[str] = []
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()

    def hold(self) -> threading.Event:
        """Block recognize() until the returned event is set."""
        self.gate = threading.Event()
        return self.gate

    def recognize(self, image_path: str) -> str:
        self.calls.append(image_path)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail_with is not None:
            raise self.fail_with
        return self.results.get(image_path, self.default)


def failing_engine(message: str = "model could not read image") -> FakeOcrEngine:
    engine = FakeOcrEngine()
    engine.fail_with = OcrError(message)
    return engine
