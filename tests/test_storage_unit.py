"""Unit tests for configuration and watermark storage."""

import json
import os
from unittest.mock import patch

import boto3
import pytest
from moto import mock_aws

from feed_digest.config import FeedsConfiguration, Settings
from feed_digest.exceptions import ConfigurationError, StorageError
from feed_digest.models import Feed
from feed_digest.storage import (
    ConfigStore,
    DynamoDBConfigStore,
    FileConfigStore,
    InMemoryWatermarkStore,
    build_config_store,
)

WEBHOOK = "https://open.larksuite.com/open-apis/bot/v2/hook/abc"


@pytest.fixture
def settings():
    with patch.dict(os.environ, {"LARK_WEBHOOK_URL": WEBHOOK}, clear=True):
        yield Settings()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / ".ai" / "feeds.json"
    path.parent.mkdir()
    path.write_text(
        json.dumps(
            {
                "feeds": [
                    {"id": "a", "url": "https://a.example.com/rss", "name": "A"},
                    {
                        "id": "b",
                        "url": "https://b.example.com/rss",
                        "name": "B",
                        "enabled": False,
                    },
                ],
                "webhookUrl": WEBHOOK,
            }
        ),
        encoding="utf-8",
    )
    return path


class TestInMemoryWatermarkStore:
    """Unit tests for the in-memory store."""

    def test_get_and_set(self):
        store = InMemoryWatermarkStore({"a": "2024-01-01T00:00:00.000Z"})

        assert store.get("a") == "2024-01-01T00:00:00.000Z"
        assert store.get("missing") is None

        store.set("a", "2024-02-01T00:00:00.000Z")
        assert store.get("a") == "2024-02-01T00:00:00.000Z"


class TestConfigStoreBase:
    """Unit tests for the abstract ConfigStore."""

    def test_store_without_watermark_methods_cannot_be_created(self, settings):
        class ConfigOnlyStore(ConfigStore):
            def load(self):
                return FeedsConfiguration()

            def save(self, config):
                pass

        with pytest.raises(TypeError):
            ConfigOnlyStore(settings)

    def test_complete_store_gets_management_operations(self, settings):
        class MemoryConfigStore(ConfigStore):
            def __init__(self, settings):
                super().__init__(settings)
                self.config = FeedsConfiguration()
                self.watermarks = {}

            def load(self):
                return self.config

            def save(self, config):
                self.config = config

            def get(self, feed_id):
                return self.watermarks.get(feed_id)

            def set(self, feed_id, timestamp):
                self.watermarks[feed_id] = timestamp

        store = MemoryConfigStore(settings)
        store.add_feed(Feed(id="a", url="https://a.example.com/rss", name="A"))
        store.update_feed_last_processed("a", "2024-01-01T00:00:00.000Z")

        assert [f.id for f in store.get_enabled_feeds()] == ["a"]
        assert store.get("a") == "2024-01-01T00:00:00.000Z"


class TestFileConfigStore:
    """Unit tests for the JSON file store."""

    def test_load(self, config_file, settings):
        store = FileConfigStore(config_file, settings=settings)

        config = store.load()

        assert [f.id for f in config.feeds] == ["a", "b"]
        assert [f.id for f in store.get_enabled_feeds()] == ["a"]

    def test_missing_file_uses_environment_defaults(self, tmp_path, settings):
        store = FileConfigStore(tmp_path / "missing.json", settings=settings)

        config = store.load()

        assert config.feeds == []
        assert config.webhook_url == WEBHOOK

    def test_missing_file_uses_feeds_config_json(self, tmp_path):
        document = {"feeds": [{"id": "env", "url": "https://env.example.com/rss"}]}
        with patch.dict(os.environ, {"FEEDS_CONFIG_JSON": json.dumps(document)}, clear=True):
            store = FileConfigStore(tmp_path / "missing.json", settings=Settings())
            config = store.load()

        assert [f.id for f in config.feeds] == ["env"]

    def test_invalid_json_raises(self, tmp_path, settings):
        path = tmp_path / "feeds.json"
        path.write_text("{broken", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            FileConfigStore(path, settings=settings).load()

    def test_save_creates_parent_directories(self, tmp_path, settings):
        path = tmp_path / "nested" / "dir" / "feeds.json"
        store = FileConfigStore(path, settings=settings)

        store.save(FeedsConfiguration(webhook_url=WEBHOOK))

        assert json.loads(path.read_text(encoding="utf-8"))["webhookUrl"] == WEBHOOK

    def test_watermark_for_configured_feed(self, config_file, settings):
        store = FileConfigStore(config_file, settings=settings)

        assert store.get("a") is None
        store.set("a", "2024-01-10T09:00:00.000Z")

        assert store.get("a") == "2024-01-10T09:00:00.000Z"
        stored = json.loads(config_file.read_text(encoding="utf-8"))
        assert stored["feeds"][0]["lastProcessed"] == "2024-01-10T09:00:00.000Z"

    def test_watermark_for_external_feed(self, config_file, settings):
        store = FileConfigStore(config_file, settings=settings)

        store.set("rec123", "2024-01-10T09:00:00.000Z")

        assert store.get("rec123") == "2024-01-10T09:00:00.000Z"
        assert [f.id for f in store.load().feeds] == ["a", "b"]

    def test_update_feed_last_processed_defaults_to_now(self, config_file, settings):
        store = FileConfigStore(config_file, settings=settings)

        store.update_feed_last_processed("a")

        value = store.get("a")
        assert value is not None
        assert value.endswith("Z")

    def test_add_feed_replaces_by_url(self, config_file, settings):
        store = FileConfigStore(config_file, settings=settings)

        store.add_feed(Feed(id="a2", url="https://a.example.com/rss", name="A renamed"))
        store.add_feed(Feed(id="c", url="https://c.example.com/rss", name="C"))

        feeds = store.load().feeds
        assert [(f.id, f.name) for f in feeds] == [
            ("a2", "A renamed"),
            ("b", "B"),
            ("c", "C"),
        ]

    def test_remove_feed(self, config_file, settings):
        store = FileConfigStore(config_file, settings=settings)

        store.remove_feed("a")

        assert [f.id for f in store.load().feeds] == ["b"]


@mock_aws
class TestDynamoDBConfigStore:
    """Unit tests for the DynamoDB store using moto."""

    table_name = "feed-digest-test"

    def _create_table(self):
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        dynamodb.create_table(
            TableName=self.table_name,
            KeySchema=[{"AttributeName": "item_id", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "item_id", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )

    def test_load_without_item_uses_fallback(self, settings):
        self._create_table()
        store = DynamoDBConfigStore(self.table_name, settings=settings)

        config = store.load()

        assert config.feeds == []
        assert config.webhook_url == WEBHOOK

    def test_save_and_load(self, settings):
        self._create_table()
        store = DynamoDBConfigStore(self.table_name, settings=settings)
        config = FeedsConfiguration(
            feeds=[Feed(id="a", url="https://a.example.com/rss", name="A")],
            webhook_url=WEBHOOK,
        )

        store.save(config)

        assert store.load() == config

    def test_watermarks(self, settings):
        self._create_table()
        store = DynamoDBConfigStore(self.table_name, settings=settings)

        assert store.get("a") is None
        store.set("a", "2024-01-10T09:00:00.000Z")
        assert store.get("a") == "2024-01-10T09:00:00.000Z"

    def test_missing_table_raises_storage_error_for_watermarks(self, settings):
        store = DynamoDBConfigStore("does-not-exist", settings=settings)

        with pytest.raises(StorageError):
            store.get("a")
        with pytest.raises(StorageError):
            store.set("a", "2024-01-10T09:00:00.000Z")

    def test_missing_table_load_falls_back(self, settings):
        store = DynamoDBConfigStore("does-not-exist", settings=settings)

        assert store.load().webhook_url == WEBHOOK


class TestBuildConfigStore:
    """Unit tests for store selection."""

    def test_file_backend(self, tmp_path):
        path = str(tmp_path / "feeds.json")
        with patch.dict(os.environ, {"FEEDS_CONFIG_FILE": path}, clear=True):
            store = build_config_store(Settings())

        assert isinstance(store, FileConfigStore)
        assert str(store.config_path) == path

    @mock_aws
    def test_dynamodb_backend(self):
        with patch.dict(
            os.environ,
            {"STORAGE_BACKEND": "dynamodb", "DYNAMODB_TABLE": "t", "AWS_REGION": "eu-west-1"},
            clear=True,
        ):
            store = build_config_store(Settings())

        assert isinstance(store, DynamoDBConfigStore)
        assert store.table_name == "t"
        assert store.aws_region == "eu-west-1"

    def test_unknown_backend(self):
        with patch.dict(os.environ, {"STORAGE_BACKEND": "redis"}, clear=True):
            with pytest.raises(ConfigurationError):
                build_config_store(Settings())
