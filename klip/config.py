#!/usr/bin/env python3
"""
Klip Configuration Management
Loads and validates process configuration from config.yml using Pydantic
"""

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "klip" / "config.yml"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "klip"


class StorageConfig(BaseModel):
    """Where the clip database and image files live"""
    data_dir: Path = Field(
        default=DEFAULT_DATA_DIR,
        description="Directory holding clips.db and the images/ folder"
    )

    @field_validator('data_dir')
    @classmethod
    def expand_data_dir(cls, v: Path) -> Path:
        return Path(v).expanduser()


class WatcherConfig(BaseModel):
    """Clipboard watcher settings"""
    poll_interval: float = Field(
        default=1.0,
        ge=0.1,
        le=60.0,
        description="Seconds between clipboard polls (0.1-60)"
    )
    capture_images: bool = Field(
        default=False,
        description="Capture raster images from the clipboard"
    )


class RetentionConfig(BaseModel):
    """Retention sweep scheduling"""
    sweep_interval_minutes: int = Field(
        default=60,
        ge=1,
        le=1440,
        description="Minutes between retention sweeps (1-1440)"
    )


class OcrConfig(BaseModel):
    """OCR backfill settings"""
    max_workers: int = Field(
        default=1,
        description="Simultaneous OCR jobs (1-2)"
    )

    @field_validator('max_workers')
    @classmethod
    def validate_max_workers(cls, v: int) -> int:
        """Recognition is CPU and memory heavy, keep the pool small"""
        if v < 1:
            raise ValueError("max_workers must be at least 1")
        if v > 2:
            raise ValueError("max_workers cannot exceed 2")
        return v


class NotifierConfig(BaseModel):
    """Change notification settings"""
    tick_ms: int = Field(
        default=50,
        ge=0,
        le=5000,
        description="Window in which mutations are coalesced into one notification"
    )


class ServerConfig(BaseModel):
    """UI server settings"""
    host: str = "localhost"
    port: int = Field(default=8765, ge=1, le=65535)
    log_level: str = "INFO"

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level


class Config(BaseModel):
    """Main configuration model"""
    storage: StorageConfig = Field(default_factory=StorageConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    ocr: OcrConfig = Field(default_factory=OcrConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


class ConfigManager:
    """Manages loading and accessing configuration"""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize config manager

        Args:
            config_path: Path to config.yml file. Defaults to ~/.config/klip/config.yml
        """
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH

        self.config_path = Path(config_path)
        self.config = self._load_config()

    def _load_config(self) -> Config:
        """Load and validate configuration from YAML file"""
        try:
            if not self.config_path.exists():
                logger.info(f"Config file not found at {self.config_path}, using defaults")
                return Config()

            with open(self.config_path, 'r') as f:
                config_data = yaml.safe_load(f)

            if config_data is None:
                logger.info("Config file is empty, using defaults")
                return Config()

            config = Config(**config_data)
            logger.info(f"Loaded config from {self.config_path}")
            logger.info(f"  - Poll interval: {config.watcher.poll_interval}s")
            logger.info(f"  - Image capture: {config.watcher.capture_images}")
            return config

        except yaml.YAMLError as e:
            logger.error(f"Error parsing config YAML: {e}")
            logger.error("Using default config")
            return Config()
        except Exception as e:
            logger.error(f"Error loading config: {e}")
            logger.error("Using default config")
            return Config()

    @property
    def data_dir(self) -> Path:
        return self.config.storage.data_dir

    @property
    def db_path(self) -> Path:
        return self.data_dir / "clips.db"

    @property
    def images_dir(self) -> Path:
        return self.data_dir / "images"

    @property
    def poll_interval(self) -> float:
        return self.config.watcher.poll_interval

    @property
    def capture_images(self) -> bool:
        return self.config.watcher.capture_images

    @property
    def sweep_interval_seconds(self) -> int:
        return self.config.retention.sweep_interval_minutes * 60

    @property
    def ocr_max_workers(self) -> int:
        return self.config.ocr.max_workers

    @property
    def notifier_tick(self) -> float:
        """Coalescing window in seconds"""
        return self.config.notifier.tick_ms / 1000.0

    @property
    def log_level(self) -> str:
        return self.config.server.log_level
