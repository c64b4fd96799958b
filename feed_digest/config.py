"""Configuration management for Feed Digest."""

import json
import os
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from .exceptions import ConfigurationError
from .models import Feed

DEFAULT_SYSTEM_PROMPT = (
    "Summarize the following content concisely and highlight key information."
)
DEFAULT_SCHEDULE = "0 9 * * *"
DEFAULT_ARTICLES_PER_FEED = 5
DEFAULT_REALTIME_INTERVAL_MINUTES = 5

# Hosts accepted as Lark webhook destinations
LARK_WEBHOOK_DOMAINS = ("larksuite.com", "feishu.cn")


def is_lark_webhook_url(url: str | None) -> bool:
    """Return True when ``url`` is an https URL on a Lark/Feishu host."""
    if not url:
        return False
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if parsed.scheme != "https" or not host:
        return False
    return any(host == d or host.endswith(f".{d}") for d in LARK_WEBHOOK_DOMAINS)


@dataclass
class LLMConfig:
    """Configuration for the summarization model, tagged by provider."""

    provider: str = "openai"
    api_key: str = ""
    model: str | None = None
    max_tokens: int = 300
    region: str = "us-east-1"

    PROVIDERS = ("openai", "claude", "bedrock")
    DEFAULT_MODELS = {
        "openai": "gpt-4o-mini",
        "claude": "claude-3-5-sonnet-20241022",
        "bedrock": "amazon.nova-micro-v1:0",
    }

    @property
    def model_id(self) -> str:
        return self.model or self.DEFAULT_MODELS[self.provider]

    def validate(self) -> None:
        """Raise ConfigurationError when the provider cannot be used."""
        if self.provider not in self.PROVIDERS:
            raise ConfigurationError(
                f"Unsupported LLM provider '{self.provider}', "
                f"expected one of {', '.join(self.PROVIDERS)}"
            )
        # Bedrock authenticates with IAM credentials instead of an API key
        if self.provider != "bedrock" and not (self.api_key and self.api_key.strip()):
            raise ConfigurationError(f"API key is required for provider {self.provider}")
        if self.max_tokens <= 0:
            raise ConfigurationError("max_tokens must be positive")


@dataclass
class LarkBaseConfig:
    """Location of a Lark Base table holding an externally managed feed list."""

    app_id: str
    app_secret: str
    base_url: str
    table_id: str
    view_id: str | None = None
    url_field_name: str = "URL"
    name_field_name: str = "Name"
    enabled_field_name: str = "Enabled"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LarkBaseConfig":
        return cls(
            app_id=data.get("appId", ""),
            app_secret=data.get("appSecret", ""),
            base_url=data.get("baseUrl", ""),
            table_id=data.get("tableId", ""),
            view_id=data.get("viewId") or None,
            url_field_name=data.get("urlFieldName") or "URL",
            name_field_name=data.get("nameFieldName") or "Name",
            enabled_field_name=data.get("enabledFieldName") or "Enabled",
        )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "appId": self.app_id,
            "appSecret": self.app_secret,
            "baseUrl": self.base_url,
            "tableId": self.table_id,
            "urlFieldName": self.url_field_name,
            "nameFieldName": self.name_field_name,
            "enabledFieldName": self.enabled_field_name,
        }
        if self.view_id:
            data["viewId"] = self.view_id
        return data


@dataclass
class FeedsConfiguration:
    """Stored configuration for all feeds (the feeds.json document)."""

    feeds: list[Feed] = field(default_factory=list)
    webhook_url: str = ""
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    process_schedule: str = DEFAULT_SCHEDULE
    realtime_monitoring: bool = False
    realtime_interval_minutes: int = DEFAULT_REALTIME_INTERVAL_MINUTES
    lark_base: LarkBaseConfig | None = None
    # Watermarks for feeds that are not in ``feeds`` (e.g. from Lark Base)
    watermarks: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeedsConfiguration":
        if not isinstance(data, dict):
            raise ConfigurationError("Feeds configuration must be a JSON object")
        try:
            feeds = [Feed.from_dict(item) for item in data.get("feeds", [])]
        except (KeyError, TypeError) as e:
            raise ConfigurationError(f"Invalid feed entry: {e}") from e

        lark_base = data.get("larkBase")
        return cls(
            feeds=feeds,
            webhook_url=data.get("webhookUrl", ""),
            default_system_prompt=data.get("defaultSystemPrompt")
            or DEFAULT_SYSTEM_PROMPT,
            process_schedule=data.get("processSchedule") or DEFAULT_SCHEDULE,
            realtime_monitoring=bool(data.get("realtimeMonitoring", False)),
            realtime_interval_minutes=int(
                data.get("realtimeIntervalMinutes")
                or DEFAULT_REALTIME_INTERVAL_MINUTES
            ),
            lark_base=LarkBaseConfig.from_dict(lark_base) if lark_base else None,
            watermarks=dict(data.get("watermarks") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "feeds": [feed.to_dict() for feed in self.feeds],
            "webhookUrl": self.webhook_url,
            "defaultSystemPrompt": self.default_system_prompt,
            "processSchedule": self.process_schedule,
            "realtimeMonitoring": self.realtime_monitoring,
            "realtimeIntervalMinutes": self.realtime_interval_minutes,
        }
        if self.lark_base:
            data["larkBase"] = self.lark_base.to_dict()
        if self.watermarks:
            data["watermarks"] = dict(self.watermarks)
        return data

    def enabled_feeds(self) -> list[Feed]:
        return [feed for feed in self.feeds if feed.enabled]


@dataclass
class ProcessorConfig:
    """Everything one batch run needs."""

    feeds: list[Feed]
    webhook_url: str
    default_prompt: str = DEFAULT_SYSTEM_PROMPT
    articles_per_feed: int = DEFAULT_ARTICLES_PER_FEED
    only_new: bool = False

    @classmethod
    def from_feeds_configuration(
        cls,
        config: FeedsConfiguration,
        articles_per_feed: int = DEFAULT_ARTICLES_PER_FEED,
        only_new: bool = False,
    ) -> "ProcessorConfig":
        return cls(
            feeds=config.feeds,
            webhook_url=config.webhook_url,
            default_prompt=config.default_system_prompt,
            articles_per_feed=articles_per_feed,
            only_new=only_new,
        )

    def validate(self) -> None:
        """Raise ConfigurationError for problems that must stop a run early."""
        if not self.webhook_url:
            raise ConfigurationError("Webhook URL is not configured")
        if not is_lark_webhook_url(self.webhook_url):
            raise ConfigurationError("Webhook URL is not a Lark webhook URL")
        if self.articles_per_feed <= 0:
            raise ConfigurationError("articles_per_feed must be positive")


class Settings:
    """Runtime settings read from environment variables."""

    def __init__(self):
        """Initialize settings from environment variables."""
        self.llm_provider = os.getenv("LLM_PROVIDER", "openai").lower()
        self.llm_model = os.getenv("LLM_MODEL") or None
        self.llm_max_tokens = _int_env("LLM_MAX_TOKENS", 300)
        self.llm_api_key_secret_name = os.getenv("LLM_API_KEY_SECRET_NAME", "")
        self.aws_region = os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1"))
        self.feeds_config_file = os.getenv("FEEDS_CONFIG_FILE", ".ai/feeds.json")
        self.storage_backend = os.getenv("STORAGE_BACKEND", "file").lower()
        self.dynamodb_table = os.getenv("DYNAMODB_TABLE", "feed-digest-config")
        self.articles_per_feed = _int_env("ARTICLES_PER_FEED", DEFAULT_ARTICLES_PER_FEED)
        self.cron_secret = os.getenv("CRON_SECRET", "")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

    @property
    def llm_api_key(self) -> str:
        provider_key = {
            "openai": "OPENAI_API_KEY",
            "claude": "ANTHROPIC_API_KEY",
        }.get(self.llm_provider, "")
        return os.getenv("LLM_API_KEY") or (os.getenv(provider_key, "") if provider_key else "")

    def get_llm_config(self, api_key: str | None = None) -> LLMConfig:
        """Build and validate the LLM configuration."""
        config = LLMConfig(
            provider=self.llm_provider,
            api_key=api_key if api_key is not None else self.llm_api_key,
            model=self.llm_model,
            max_tokens=self.llm_max_tokens,
            region=self.aws_region,
        )
        config.validate()
        return config

    def default_feeds_configuration(self) -> FeedsConfiguration:
        """Configuration used when no stored configuration exists."""
        return FeedsConfiguration(
            feeds=[],
            webhook_url=os.getenv("LARK_WEBHOOK_URL", ""),
            default_system_prompt=os.getenv("SUMMARY_SYSTEM_PROMPT")
            or DEFAULT_SYSTEM_PROMPT,
            process_schedule=os.getenv("FEED_PROCESS_SCHEDULE") or DEFAULT_SCHEDULE,
        )

    def feeds_configuration_from_env(self) -> FeedsConfiguration | None:
        """Parse FEEDS_CONFIG_JSON if set; None when absent."""
        raw = os.getenv("FEEDS_CONFIG_JSON")
        if not raw:
            return None
        try:
            return FeedsConfiguration.from_dict(json.loads(raw))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in FEEDS_CONFIG_JSON: {e}") from e


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
