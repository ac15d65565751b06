"""Tests for retention sweeps."""

import time
from datetime import timedelta

import pytest

from klip.models import ImageClip, TextClip, new_clip_id
from klip.services.database_service import DatabaseService
from klip.services.retention_service import RetentionService
from klip.services.settings_service import SettingsService
from fixtures.database import notifier, temp_store
from fixtures.settings import settings_service
from fixtures.test_data import generate_random_image, generate_timestamp


@pytest.fixture
def retention(temp_store: DatabaseService, settings_service: SettingsService) -> RetentionService:
    return RetentionService(temp_store, settings_service, interval_seconds=3600)


def add_image(store: DatabaseService, days_ago: float, is_favorite: bool = False) -> ImageClip:
    """Store an image clip whose file lives in the store's image area."""
    clip_id = new_clip_id()
    path = store.images_dir / f"{clip_id}.png"
    path.write_bytes(generate_random_image())
    clip = ImageClip(id=clip_id, image_path=str(path), is_favorite=is_favorite,
                     created_at=generate_timestamp(days_ago=days_ago))
    store.insert(clip)
    return clip


class TestRetentionSweep:
    """Test retention policy enforcement."""

    def test_thirty_day_retention_keeps_favorites_and_recent(self, retention, settings_service, temp_store):
        """A 40 day old clip goes, a 100 day old favorite stays."""
        settings_service.set_setting("retention_days", "30")
        old = add_image(temp_store, days_ago=40)
        favorite = temp_store.insert(
            TextClip(content="keeper", created_at=generate_timestamp(days_ago=100), is_favorite=True)
        )
        assert temp_store.get_clip(old.id) is not None

        report = retention.sweep()

        assert report.deleted_ids == [old.id]
        assert temp_store.get_clip(old.id) is None
        assert not (temp_store.images_dir / f"{old.id}.png").exists()
        assert temp_store.get_clip(favorite) is not None

    def test_default_retention_is_ninety_days(self, retention, temp_store):
        kept = temp_store.insert(TextClip(content="80 days", created_at=generate_timestamp(days_ago=80)))
        dropped = temp_store.insert(TextClip(content="95 days", created_at=generate_timestamp(days_ago=95)))

        retention.sweep()

        assert temp_store.get_clip(kept) is not None
        assert temp_store.get_clip(dropped) is None

    def test_favorite_images_keep_their_files(self, retention, settings_service, temp_store):
        settings_service.set_setting("retention_days", "1")
        favorite = add_image(temp_store, days_ago=365, is_favorite=True)

        retention.sweep()

        assert temp_store.get_clip(favorite.id) is not None
        assert (temp_store.images_dir / f"{favorite.id}.png").exists()

    def test_setting_change_applies_on_next_sweep(self, retention, settings_service, temp_store):
        """Test that retention_days is read on every sweep."""
        clip_id = temp_store.insert(TextClip(content="20 days", created_at=generate_timestamp(days_ago=20)))

        retention.sweep()
        assert temp_store.get_clip(clip_id) is not None

        settings_service.set_setting("retention_days", "10")
        retention.sweep()
        assert temp_store.get_clip(clip_id) is None

    def test_sweep_reference_time(self, retention, temp_store):
        clip_id = temp_store.insert(TextClip(content="recent", created_at=generate_timestamp(days_ago=1)))

        report = retention.sweep(now=generate_timestamp() + timedelta(days=100))

        assert report.deleted_ids == [clip_id]

    def test_sweep_collects_orphans_and_dangling(self, retention, temp_store):
        """Test that a sweep repairs an interrupted earlier deletion."""
        orphan = temp_store.images_dir / "orphan.png"
        orphan.write_bytes(generate_random_image())
        dangling = add_image(temp_store, days_ago=1)
        (temp_store.images_dir / f"{dangling.id}.png").unlink()

        report = retention.sweep()

        assert report.orphans_removed == 1
        assert report.dangling_removed == 1
        assert not orphan.exists()
        assert temp_store.get_clip(dangling.id) is None
        assert all(clip.id != dangling.id for clip in temp_store.query())

    def test_empty_store(self, retention):
        report = retention.sweep()

        assert report.deleted_ids == []
        assert report.orphans_removed == 0


class TestRetentionWorker:
    """Test the scheduled worker."""

    def test_start_sweeps_immediately(self, retention, temp_store):
        clip_id = temp_store.insert(TextClip(content="ancient", created_at=generate_timestamp(days_ago=500)))

        retention.start()
        try:
            deadline = time.time() + 3
            while temp_store.get_clip(clip_id) is not None and time.time() < deadline:
                time.sleep(0.05)
        finally:
            retention.stop()

        assert temp_store.get_clip(clip_id) is None

    def test_failed_sweep_keeps_worker_alive(self, temp_store, settings_service, monkeypatch):
        retention = RetentionService(temp_store, settings_service, interval_seconds=0.05)
        calls = []
        real_reconcile = temp_store.reconcile

        def flaky_reconcile():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("disk hiccup")
            return real_reconcile()

        monkeypatch.setattr(temp_store, "reconcile", flaky_reconcile)
        retention.start()
        try:
            deadline = time.time() + 3
            while len(calls) < 3 and time.time() < deadline:
                time.sleep(0.02)
        finally:
            retention.stop()

        assert len(calls) >= 3
