#!/usr/bin/env python3
"""
WebSocket Service - Handles WebSocket communication with UI
"""
import asyncio
import json
import logging
import traceback
from typing import Optional, Set

import websockets

from klip.errors import ClipboardWriteError, NotFoundError, OcrError, StorageError
from klip.models import clip_to_dict

logger = logging.getLogger(__name__)

CHANGE_MESSAGE = {"type": "clipboard-changed"}


def _require(data: dict, key: str):
    value = data.get(key)
    if value is None or value == "":
        raise ValueError(f"{key} is required")
    return value


class WebSocketService:
    """Service for WebSocket communication with UI clients"""

    def __init__(self, database_service, query_service, settings_service, clipboard_service,
                 ocr_service, notification_service=None):
        """
        Initialize WebSocket service

        Args:
            database_service: Clip store for mutations
            query_service: Listing and date facet
            settings_service: User settings
            clipboard_service: Clipboard watcher, for writing to the OS clipboard
            ocr_service: OCR job coordinator
            notification_service: Optional change notifier to broadcast from
        """
        logger.info("[WebSocketService.__init__] Starting initialization...")
        self.db_service = database_service
        self.query_service = query_service
        self.settings_service = settings_service
        self.clipboard_service = clipboard_service
        self.ocr_service = ocr_service
        self.clients: Set = set()
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._jobs: Set[asyncio.Task] = set()
        self._unsubscribe = None
        if notification_service is not None:
            self._unsubscribe = notification_service.subscribe(self.on_clips_changed)
        logger.info("[WebSocketService.__init__] Initialization complete")

    def attach_loop(self, loop: asyncio.AbstractEventLoop):
        """Event loop that change broadcasts are scheduled on"""
        self.loop = loop

    def on_clips_changed(self):
        """Notifier callback, called from the dispatcher thread"""
        loop = self.loop
        if loop is None or loop.is_closed() or not self.clients:
            return
        asyncio.run_coroutine_threadsafe(self.broadcast(CHANGE_MESSAGE), loop)

    def close(self):
        """Stop receiving change notifications"""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def websocket_handler(self, websocket):
        """Handle WebSocket client connections from UI"""
        logger.info(f"WebSocket client connected from {getattr(websocket, 'remote_address', None)}")
        if self.loop is None:
            self.loop = asyncio.get_running_loop()
        self.clients.add(websocket)

        try:
            async for message in websocket:
                try:
                    await self.handle_message(websocket, message)
                except Exception as e:
                    logger.error(f"Error handling WebSocket message: {e}")
                    logger.error(traceback.format_exc())

        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self.clients.discard(websocket)
            logger.info("WebSocket client disconnected")

    async def handle_message(self, websocket, message: str):
        """Handle one JSON request, replying with a result or an error"""
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            await self._send_error(websocket, None, "invalid", f"Malformed JSON: {e}")
            return
        if not isinstance(data, dict):
            await self._send_error(websocket, None, "invalid", "Request must be a JSON object")
            return

        action = data.get("action")
        try:
            await self._dispatch(websocket, action, data)
        except NotFoundError as e:
            await self._send_error(websocket, action, "not_found", str(e))
        except StorageError as e:
            logger.error(f"Storage error during {action}: {e}")
            await self._send_error(websocket, action, "storage", str(e))
        except ClipboardWriteError as e:
            logger.warning(f"Clipboard write failed during {action}: {e}")
            await self._send_error(websocket, action, "clipboard", str(e))
        except OcrError as e:
            await self._send_error(websocket, action, "ocr", str(e))
        except (ValueError, TypeError) as e:
            await self._send_error(websocket, action, "invalid", str(e))

    async def _dispatch(self, websocket, action, data: dict):
        if action == "get_clips":
            await self._handle_get_clips(websocket, data)
        elif action == "get_dates_with_clips":
            await self._handle_get_dates_with_clips(websocket)
        elif action == "delete_clip":
            await self._handle_delete_clip(websocket, data)
        elif action == "update_clip_content":
            await self._handle_update_clip_content(websocket, data)
        elif action == "toggle_favorite":
            await self._handle_toggle_favorite(websocket, data)
        elif action == "extract_text":
            await self._handle_extract_text(websocket, data)
        elif action == "copy_to_clipboard":
            await self._handle_copy_to_clipboard(websocket, data)
        elif action == "copy_image_to_clipboard":
            await self._handle_copy_image_to_clipboard(websocket, data)
        elif action == "get_setting":
            await self._handle_get_setting(websocket, data)
        elif action == "set_setting":
            await self._handle_set_setting(websocket, data)
        else:
            logger.warning(f"Unknown WebSocket action: {action}")
            raise ValueError(f"Unknown action: {action}")

    async def _handle_get_clips(self, websocket, data):
        """Handle get_clips action"""
        clips = self.query_service.get_clips(
            search_text=data.get("search_text"),
            date_filter=data.get("date_filter"),
            limit=data.get("limit"),
        )
        response = {"type": "clips", "clips": [clip_to_dict(clip) for clip in clips]}
        await websocket.send(json.dumps(response))

    async def _handle_get_dates_with_clips(self, websocket):
        """Handle get_dates_with_clips action"""
        dates = self.query_service.get_dates_with_clips()
        response = {"type": "dates", "dates": [day.isoformat() for day in dates]}
        await websocket.send(json.dumps(response))

    async def _handle_delete_clip(self, websocket, data):
        """Handle delete_clip action"""
        clip_id = _require(data, "id")
        self.db_service.delete_clip(clip_id)
        await websocket.send(json.dumps({"type": "clip_deleted", "id": clip_id}))

    async def _handle_update_clip_content(self, websocket, data):
        """Handle update_clip_content action"""
        clip_id = _require(data, "id")
        content = data.get("content")
        if not isinstance(content, str):
            raise ValueError("content must be a string")
        self.db_service.update_content(clip_id, content)
        await websocket.send(json.dumps({"type": "clip_updated", "id": clip_id}))

    async def _handle_toggle_favorite(self, websocket, data):
        """Handle toggle_favorite action"""
        clip_id = _require(data, "id")
        is_favorite = data.get("is_favorite")
        if is_favorite is not None and not isinstance(is_favorite, bool):
            raise ValueError("is_favorite must be a boolean")
        new_value = self.db_service.toggle_favorite(clip_id, is_favorite)
        response = {"type": "favorite_toggled", "id": clip_id, "is_favorite": new_value}
        await websocket.send(json.dumps(response))

    async def _handle_extract_text(self, websocket, data):
        """Handle extract_text action, the result goes to this client only"""
        clip_id = _require(data, "id")
        image_path = _require(data, "image_path")
        future = self.ocr_service.submit(clip_id, image_path)
        if future is None:
            response = {"type": "text_extraction", "id": clip_id, "status": "already_running"}
            await websocket.send(json.dumps(response))
            return

        await websocket.send(json.dumps({"type": "text_extraction", "id": clip_id, "status": "started"}))
        task = asyncio.create_task(self._deliver_ocr_result(websocket, clip_id, future))
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)

    async def _deliver_ocr_result(self, websocket, clip_id: str, future):
        action = "extract_text"
        try:
            result = await asyncio.wrap_future(future)
            response = {"type": "text_extracted", "id": clip_id, "content": result.text}
            await websocket.send(json.dumps(response))
        except NotFoundError as e:
            await self._send_error(websocket, action, "not_found", str(e))
        except StorageError as e:
            await self._send_error(websocket, action, "storage", str(e))
        except OcrError as e:
            await self._send_error(websocket, action, "ocr", str(e))
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Client left before OCR for clip {clip_id} finished")

    async def wait_for_jobs(self):
        """Wait until every pending OCR reply has been delivered"""
        if self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)

    async def _handle_copy_to_clipboard(self, websocket, data):
        """Handle copy_to_clipboard action"""
        content = data.get("content")
        if not isinstance(content, str) or not content:
            raise ValueError("content must be a non-empty string")
        self.clipboard_service.copy_to_clipboard(content)
        await websocket.send(json.dumps({"type": "copied", "success": True}))

    async def _handle_copy_image_to_clipboard(self, websocket, data):
        """Handle copy_image_to_clipboard action"""
        path = _require(data, "path")
        self.clipboard_service.copy_image_to_clipboard(path)
        await websocket.send(json.dumps({"type": "copied", "success": True}))

    async def _handle_get_setting(self, websocket, data):
        """Handle get_setting action"""
        key = _require(data, "key")
        value = self.settings_service.get_setting(key)
        await websocket.send(json.dumps({"type": "setting", "key": key, "value": value}))

    async def _handle_set_setting(self, websocket, data):
        """Handle set_setting action"""
        key = _require(data, "key")
        if "value" not in data or data["value"] is None:
            raise ValueError("value is required")
        stored = self.settings_service.set_setting(key, data["value"])
        await websocket.send(json.dumps({"type": "setting_updated", "key": key, "value": stored}))

    async def _send_error(self, websocket, action, kind: str, message: str):
        response = {"type": "error", "action": action, "error": kind, "message": message}
        await websocket.send(json.dumps(response))

    async def broadcast(self, message: dict):
        """Broadcast message to all WebSocket clients"""
        if self.clients:
            message_json = json.dumps(message)
            await asyncio.gather(*[client.send(message_json) for client in list(self.clients)],
                                 return_exceptions=True)
