"""Configuration and watermark storage for Feed Digest.

Two backends are provided: a JSON file (local runs) and a DynamoDB table
(serverless runs). Which one is used is decided once at startup by
``build_config_store``; nothing downstream inspects the environment.
"""

import json
import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import boto3
from botocore.exceptions import ClientError

from .config import FeedsConfiguration, Settings
from .exceptions import ConfigurationError, StorageError
from .logging_config import create_execution_logger
from .models import Feed, format_timestamp


class WatermarkStore(Protocol):
    """Per-feed "last processed" timestamps."""

    def get(self, feed_id: str) -> str | None: ...

    def set(self, feed_id: str, timestamp: str) -> None: ...


class InMemoryWatermarkStore:
    """Watermarks kept in a dict; useful for one-off runs and tests."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._watermarks: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, feed_id: str) -> str | None:
        with self._lock:
            return self._watermarks.get(feed_id)

    def set(self, feed_id: str, timestamp: str) -> None:
        with self._lock:
            self._watermarks[feed_id] = timestamp


class ConfigStore(ABC):
    """Shared configuration-management operations on top of load/save."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._lock = threading.RLock()

    @abstractmethod
    def load(self) -> FeedsConfiguration:
        """Return the stored configuration."""

    @abstractmethod
    def save(self, config: FeedsConfiguration) -> None:
        """Persist the whole configuration."""

    def _fallback_configuration(self) -> FeedsConfiguration:
        return (
            self.settings.feeds_configuration_from_env()
            or self.settings.default_feeds_configuration()
        )

    def add_feed(self, feed: Feed) -> None:
        """Add a feed, replacing any existing feed with the same URL."""
        with self._lock:
            config = self.load()
            for index, existing in enumerate(config.feeds):
                if existing.url == feed.url:
                    config.feeds[index] = feed
                    break
            else:
                config.feeds.append(feed)
            self.save(config)

    def remove_feed(self, feed_id: str) -> None:
        with self._lock:
            config = self.load()
            config.feeds = [f for f in config.feeds if f.id != feed_id]
            self.save(config)

    def get_enabled_feeds(self) -> list[Feed]:
        return self.load().enabled_feeds()

    def update_feed_last_processed(
        self, feed_id: str, timestamp: str | None = None
    ) -> None:
        self.set(feed_id, timestamp or format_timestamp(datetime.now(UTC)))

    @abstractmethod
    def get(self, feed_id: str) -> str | None:
        """Return the watermark of a feed, or None."""

    @abstractmethod
    def set(self, feed_id: str, timestamp: str) -> None:
        """Store the watermark of a feed."""


class FileConfigStore(ConfigStore):
    """Feeds configuration and watermarks stored in one JSON file."""

    def __init__(
        self,
        config_path: str | Path,
        settings: Settings | None = None,
        execution_id: str | None = None,
    ):
        super().__init__(settings)
        self.config_path = Path(config_path)
        self.logger = create_execution_logger("storage", execution_id)

    def load(self) -> FeedsConfiguration:
        """Load the configuration file, or the fallback when it does not exist."""
        if not self.config_path.exists():
            self.logger.info(
                "Configuration file not found, using defaults",
                config_path=str(self.config_path),
            )
            return self._fallback_configuration()

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Invalid JSON in configuration file {self.config_path}: {e}"
            ) from e
        except OSError as e:
            raise StorageError(
                f"Failed to load configuration from {self.config_path}: {e}"
            ) from e

        return FeedsConfiguration.from_dict(data)

    def save(self, config: FeedsConfiguration) -> None:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(config.to_dict(), f, indent=2, ensure_ascii=False)
        except OSError as e:
            raise StorageError(
                f"Failed to save configuration to {self.config_path}: {e}"
            ) from e

    def get(self, feed_id: str) -> str | None:
        config = self.load()
        for feed in config.feeds:
            if feed.id == feed_id:
                return feed.last_processed
        return config.watermarks.get(feed_id)

    def set(self, feed_id: str, timestamp: str) -> None:
        with self._lock:
            config = self.load()
            for feed in config.feeds:
                if feed.id == feed_id:
                    feed.last_processed = timestamp
                    break
            else:
                config.watermarks[feed_id] = timestamp
            self.save(config)
            self.logger.debug("Updated feed watermark", feed_id=feed_id, timestamp=timestamp)


class DynamoDBConfigStore(ConfigStore):
    """Configuration document and per-feed watermarks in a DynamoDB table.

    The table is keyed by ``item_id``. The configuration lives in a single
    item; each feed watermark is its own item so concurrent feeds never
    rewrite the whole document.
    """

    CONFIG_KEY = "rss-feeds-config"
    WATERMARK_PREFIX = "watermark#"

    def __init__(
        self,
        table_name: str,
        aws_region: str = "us-east-1",
        settings: Settings | None = None,
        execution_id: str | None = None,
    ):
        super().__init__(settings)
        self.table_name = table_name
        self.aws_region = aws_region
        self.logger = create_execution_logger("storage", execution_id)
        self.dynamodb = boto3.resource("dynamodb", region_name=aws_region)
        self.table = self.dynamodb.Table(table_name)

        self.logger.info(
            "DynamoDB store initialized", table_name=table_name, aws_region=aws_region
        )

    def load(self) -> FeedsConfiguration:
        try:
            response = self.table.get_item(Key={"item_id": self.CONFIG_KEY})
        except ClientError as e:
            self.logger.error(
                f"Failed to load configuration from DynamoDB: {e}", error=str(e)
            )
            return self._fallback_configuration()

        item = response.get("Item")
        if not item or "config" not in item:
            return self._fallback_configuration()

        try:
            return FeedsConfiguration.from_dict(json.loads(item["config"]))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Stored configuration is not valid JSON: {e}") from e

    def save(self, config: FeedsConfiguration) -> None:
        try:
            self.table.put_item(
                Item={
                    "item_id": self.CONFIG_KEY,
                    "config": json.dumps(config.to_dict(), ensure_ascii=False),
                    "updated_at": datetime.now(UTC).isoformat(),
                }
            )
        except ClientError as e:
            raise StorageError(f"Failed to save configuration to DynamoDB: {e}") from e

    def get(self, feed_id: str) -> str | None:
        try:
            response = self.table.get_item(
                Key={"item_id": f"{self.WATERMARK_PREFIX}{feed_id}"}
            )
        except ClientError as e:
            raise StorageError(f"Failed to read watermark for {feed_id}: {e}") from e
        item = response.get("Item")
        return item.get("last_processed") if item else None

    def set(self, feed_id: str, timestamp: str) -> None:
        try:
            self.table.put_item(
                Item={
                    "item_id": f"{self.WATERMARK_PREFIX}{feed_id}",
                    "feed_id": feed_id,
                    "last_processed": timestamp,
                }
            )
            self.logger.debug("Stored feed watermark", feed_id=feed_id, timestamp=timestamp)
        except ClientError as e:
            raise StorageError(f"Failed to store watermark for {feed_id}: {e}") from e


def build_config_store(
    settings: Settings, execution_id: str | None = None
) -> ConfigStore:
    """Create the store selected by ``settings.storage_backend``."""
    if settings.storage_backend == "dynamodb":
        return DynamoDBConfigStore(
            settings.dynamodb_table,
            aws_region=settings.aws_region,
            settings=settings,
            execution_id=execution_id,
        )
    if settings.storage_backend == "file":
        return FileConfigStore(
            settings.feeds_config_file, settings=settings, execution_id=execution_id
        )
    raise ConfigurationError(f"Unknown storage backend '{settings.storage_backend}'")
