"""Tests for the WebSocket UI protocol."""

import asyncio
import json

import pytest

from klip.errors import StorageError
from klip.models import ImageClip
from klip.services.clipboard_service import ClipboardService
from klip.services.database_service import DatabaseService
from klip.services.ocr_service import OcrService
from klip.services.query_service import QueryService
from klip.services.settings_service import SettingsService
from klip.services.websocket_service import WebSocketService
from fixtures.clipboard import FakeClipboard
from fixtures.database import notifier, temp_store
from fixtures.ocr import FakeOcrEngine, failing_engine
from fixtures.test_data import generate_solid_image
from fixtures.websocket import FakeWebSocket


@pytest.fixture
def clipboard() -> FakeClipboard:
    return FakeClipboard()


@pytest.fixture
def engine() -> FakeOcrEngine:
    return FakeOcrEngine(results={"/data/a.png": "INVOICE 123"})


@pytest.fixture
def ws_service(temp_store: DatabaseService, clipboard, engine, notifier):
    ocr_service = OcrService(temp_store, engine=engine)
    service = WebSocketService(
        temp_store,
        QueryService(temp_store),
        SettingsService(temp_store),
        ClipboardService(temp_store, clipboard=clipboard),
        ocr_service,
        notification_service=notifier,
    )
    yield service
    service.close()
    ocr_service.shutdown()


def request(service: WebSocketService, websocket: FakeWebSocket, **message) -> dict:
    """Send one request and return the reply."""
    asyncio.run(service.handle_message(websocket, json.dumps(message)))
    return websocket.get_sent_json()


class TestListing:
    """Test list and facet actions."""

    def test_get_clips(self, ws_service, temp_store):
        temp_store.add_text_clip("first")
        temp_store.add_text_clip("second")
        websocket = FakeWebSocket()

        reply = request(ws_service, websocket, action="get_clips")

        assert reply["type"] == "clips"
        assert [clip["content"] for clip in reply["clips"]] == ["second", "first"]
        assert reply["clips"][0]["clip_type"] == "text"
        assert reply["clips"][0]["image_path"] is None

    def test_get_clips_with_filters(self, ws_service, temp_store):
        temp_store.add_text_clip("needle")
        temp_store.add_text_clip("haystack")
        websocket = FakeWebSocket()

        reply = request(ws_service, websocket, action="get_clips", search_text="NEEDLE", date_filter="")

        assert [clip["content"] for clip in reply["clips"]] == ["needle"]

    def test_get_clips_bad_date(self, ws_service):
        reply = request(ws_service, FakeWebSocket(), action="get_clips", date_filter="tomorrow-ish")

        assert reply["type"] == "error"
        assert reply["error"] == "invalid"
        assert reply["action"] == "get_clips"

    def test_get_dates(self, ws_service, temp_store):
        clip_id = temp_store.add_text_clip("today")
        local_day = temp_store.get_clip(clip_id).local_date

        reply = request(ws_service, FakeWebSocket(), action="get_dates_with_clips")

        assert reply == {"type": "dates", "dates": [local_day.isoformat()]}


class TestMutations:
    """Test mutating actions."""

    def test_delete_clip(self, ws_service, temp_store):
        clip_id = temp_store.add_text_clip("bye")
        websocket = FakeWebSocket()

        reply = request(ws_service, websocket, action="delete_clip", id=clip_id)
        listing = request(ws_service, websocket, action="get_clips")

        assert reply == {"type": "clip_deleted", "id": clip_id}
        assert all(clip["id"] != clip_id for clip in listing["clips"])

    def test_delete_missing_clip(self, ws_service):
        reply = request(ws_service, FakeWebSocket(), action="delete_clip", id="missing")

        assert reply["type"] == "error"
        assert reply["error"] == "not_found"

    def test_update_clip_content(self, ws_service, temp_store):
        clip_id = temp_store.add_text_clip("old")
        websocket = FakeWebSocket()

        request(ws_service, websocket, action="update_clip_content", id=clip_id, content="X")
        listing = request(ws_service, websocket, action="get_clips")

        assert listing["clips"][0]["content"] == "X"
        assert listing["clips"][0]["clip_type"] == "text"

    def test_update_text_clip_to_empty(self, ws_service, temp_store):
        clip_id = temp_store.add_text_clip("old")

        reply = request(ws_service, FakeWebSocket(), action="update_clip_content", id=clip_id, content="")

        assert reply["error"] == "invalid"

    def test_toggle_favorite(self, ws_service, temp_store):
        clip_id = temp_store.add_text_clip("star")
        websocket = FakeWebSocket()

        first = request(ws_service, websocket, action="toggle_favorite", id=clip_id)
        second = request(ws_service, websocket, action="toggle_favorite", id=clip_id, is_favorite=True)

        assert first["is_favorite"] is True
        assert second["is_favorite"] is True
        assert temp_store.get_clip(clip_id).is_favorite is True

    def test_missing_id(self, ws_service):
        reply = request(ws_service, FakeWebSocket(), action="toggle_favorite")

        assert reply["error"] == "invalid"


class TestProtocolErrors:
    """Test malformed requests."""

    def test_unknown_action(self, ws_service):
        reply = request(ws_service, FakeWebSocket(), action="format_disk")

        assert reply["type"] == "error"
        assert reply["error"] == "invalid"

    def test_malformed_json(self, ws_service):
        websocket = FakeWebSocket()
        asyncio.run(ws_service.handle_message(websocket, "{not json"))

        assert websocket.get_sent_json()["error"] == "invalid"

    def test_storage_error_reported(self, ws_service, temp_store, monkeypatch):
        def broken_query(*args, **kwargs):
            raise StorageError("database is locked")

        monkeypatch.setattr(temp_store, "query", broken_query)

        reply = request(ws_service, FakeWebSocket(), action="get_clips")

        assert reply["error"] == "storage"


class TestClipboardActions:
    """Test writes to the OS clipboard."""

    def test_copy_to_clipboard(self, ws_service, clipboard):
        reply = request(ws_service, FakeWebSocket(), action="copy_to_clipboard", content="paste me")

        assert reply == {"type": "copied", "success": True}
        assert clipboard.written_text == ["paste me"]

    def test_copy_image_to_clipboard(self, ws_service, clipboard, tmp_path):
        image_path = tmp_path / "shot.png"
        image_path.write_bytes(generate_solid_image())

        reply = request(ws_service, FakeWebSocket(), action="copy_image_to_clipboard", path=str(image_path))

        assert reply["type"] == "copied"
        assert clipboard.written_images == [str(image_path)]

    def test_clipboard_write_failure(self, ws_service, clipboard):
        clipboard.fail_writes = True

        reply = request(ws_service, FakeWebSocket(), action="copy_to_clipboard", content="x")

        assert reply["error"] == "clipboard"


class TestSettingsActions:
    """Test settings access."""

    def test_get_default_setting(self, ws_service):
        reply = request(ws_service, FakeWebSocket(), action="get_setting", key="retention_days")

        assert reply == {"type": "setting", "key": "retention_days", "value": "90"}

    def test_set_setting(self, ws_service):
        websocket = FakeWebSocket()

        reply = request(ws_service, websocket, action="set_setting", key="retention_days", value="30")
        read_back = request(ws_service, websocket, action="get_setting", key="retention_days")

        assert reply["value"] == "30"
        assert read_back["value"] == "30"

    def test_invalid_setting(self, ws_service):
        reply = request(ws_service, FakeWebSocket(), action="set_setting", key="retention_days", value="0")

        assert reply["error"] == "invalid"


class TestExtractText:
    """Test OCR requests over the socket."""

    def _add_image(self, store: DatabaseService) -> ImageClip:
        clip = ImageClip(image_path="/data/a.png")
        store.insert(clip)
        return clip

    def test_result_sent_to_requester_only(self, ws_service, temp_store):
        clip = self._add_image(temp_store)
        requester = FakeWebSocket()
        bystander = FakeWebSocket()
        ws_service.clients.update({requester, bystander})

        async def run():
            await ws_service.handle_message(
                requester, json.dumps({"action": "extract_text", "id": clip.id, "image_path": "/data/a.png"})
            )
            await ws_service.wait_for_jobs()

        asyncio.run(run())

        messages = requester.get_all_sent_json()
        assert messages[0] == {"type": "text_extraction", "id": clip.id, "status": "started"}
        assert messages[-1] == {"type": "text_extracted", "id": clip.id, "content": "INVOICE 123"}
        assert bystander.sent_messages == []
        assert temp_store.get_clip(clip.id).content == "INVOICE 123"

    def test_failure_reported_as_ocr_error(self, temp_store, clipboard, notifier):
        clip = self._add_image(temp_store)
        ocr_service = OcrService(temp_store, engine=failing_engine())
        service = WebSocketService(
            temp_store, QueryService(temp_store), SettingsService(temp_store),
            ClipboardService(temp_store, clipboard=clipboard), ocr_service,
        )
        websocket = FakeWebSocket()

        async def run():
            await service.handle_message(
                websocket, json.dumps({"action": "extract_text", "id": clip.id, "image_path": "/data/a.png"})
            )
            await service.wait_for_jobs()

        try:
            asyncio.run(run())
        finally:
            ocr_service.shutdown()

        reply = websocket.get_sent_json()
        assert reply["type"] == "error"
        assert reply["error"] == "ocr"
        assert reply["action"] == "extract_text"
        assert temp_store.get_clip(clip.id).content == ""

    def test_wrong_path_rejected(self, ws_service, temp_store):
        clip = self._add_image(temp_store)

        reply = request(ws_service, FakeWebSocket(), action="extract_text", id=clip.id, image_path="/etc/passwd")

        assert reply["error"] == "invalid"

    def test_request_after_shutdown_gets_error_reply(self, ws_service, temp_store):
        clip = self._add_image(temp_store)
        ws_service.ocr_service.shutdown()

        reply = request(ws_service, FakeWebSocket(), action="extract_text", id=clip.id, image_path="/data/a.png")

        assert reply["type"] == "error"
        assert reply["error"] == "ocr"
        assert reply["action"] == "extract_text"

    def test_duplicate_request_reported(self, ws_service, temp_store, engine):
        clip = self._add_image(temp_store)
        gate = engine.hold()
        websocket = FakeWebSocket()

        async def run():
            message = json.dumps({"action": "extract_text", "id": clip.id, "image_path": "/data/a.png"})
            await ws_service.handle_message(websocket, message)
            await asyncio.get_running_loop().run_in_executor(None, engine.started.wait, 5)
            await ws_service.handle_message(websocket, message)
            gate.set()
            await ws_service.wait_for_jobs()

        asyncio.run(run())

        statuses = [m.get("status") for m in websocket.get_all_sent_json() if m["type"] == "text_extraction"]
        assert statuses == ["started", "already_running"]


class TestChangeBroadcast:
    """Test change notifications pushed to clients."""

    def test_notification_broadcast_to_all_clients(self, ws_service, temp_store, notifier):
        first, second = FakeWebSocket(), FakeWebSocket()
        ws_service.clients.update({first, second})

        async def run():
            ws_service.attach_loop(asyncio.get_running_loop())
            temp_store.add_text_clip("new clip")
            await asyncio.get_running_loop().run_in_executor(None, notifier.dispatch_pending)
            # Let the scheduled broadcast run
            for _ in range(10):
                await asyncio.sleep(0.01)

        asyncio.run(run())

        assert first.get_all_sent_json() == [{"type": "clipboard-changed"}]
        assert second.get_all_sent_json() == [{"type": "clipboard-changed"}]

    def test_no_loop_no_broadcast(self, ws_service, temp_store, notifier):
        websocket = FakeWebSocket()
        ws_service.clients.add(websocket)

        temp_store.add_text_clip("nobody listening yet")
        notifier.dispatch_pending()

        assert websocket.sent_messages == []
