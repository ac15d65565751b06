#!/usr/bin/env python3
"""
System Clipboard - Reads and writes the OS clipboard
"""
import io
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

import pyperclip
from PIL import Image, ImageGrab

from klip.errors import CaptureError, ClipboardWriteError, NotFoundError

logger = logging.getLogger(__name__)


class SystemClipboard:
    """
    OS clipboard access

    Text goes through pyperclip. Images are read with Pillow's ImageGrab and
    written with wl-copy on Wayland or xclip on X11.
    """

    def read_text(self) -> str:
        """Get the current clipboard text ("" when there is none)"""
        try:
            return pyperclip.paste() or ""
        except pyperclip.PyperclipException as e:
            raise CaptureError(f"Failed to read clipboard text: {e}") from e

    def read_image(self) -> Optional[bytes]:
        """Get the current clipboard image as PNG bytes, or None"""
        try:
            grabbed = ImageGrab.grabclipboard()
        except (OSError, NotImplementedError) as e:
            raise CaptureError(f"Failed to read clipboard image: {e}") from e

        # A list means file paths were copied, not image data
        if not isinstance(grabbed, Image.Image):
            return None

        buffer = io.BytesIO()
        try:
            grabbed.save(buffer, format="PNG")
        except OSError as e:
            raise CaptureError(f"Failed to encode clipboard image: {e}") from e
        return buffer.getvalue()

    def write_text(self, text: str):
        """Put text on the clipboard"""
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as e:
            raise ClipboardWriteError(f"Failed to write clipboard text: {e}") from e

    def write_image(self, image_path: str):
        """Put a PNG file on the clipboard"""
        path = Path(image_path)
        if not path.is_file():
            raise NotFoundError(image_path, f"Image file not found: {image_path}")

        command = self._image_copy_command()
        if command is None:
            raise ClipboardWriteError("No image clipboard tool found (install wl-clipboard or xclip)")

        try:
            with open(path, "rb") as f:
                result = subprocess.run(command, stdin=f, capture_output=True, timeout=5)
        except subprocess.TimeoutExpired as e:
            raise ClipboardWriteError(f"{command[0]} timed out") from e
        except OSError as e:
            raise ClipboardWriteError(f"Failed to run {command[0]}: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode(errors="replace").strip() if result.stderr else "Unknown error"
            raise ClipboardWriteError(f"{command[0]} failed: {stderr}")

    @staticmethod
    def _image_copy_command() -> Optional[List[str]]:
        if os.environ.get("WAYLAND_DISPLAY") and shutil.which("wl-copy"):
            return ["wl-copy", "--type", "image/png"]
        if shutil.which("xclip"):
            return ["xclip", "-selection", "clipboard", "-t", "image/png", "-i"]
        return None
