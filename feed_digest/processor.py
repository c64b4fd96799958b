"""Feed processing pipeline: per-feed summarization and the batch run."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from .config import DEFAULT_ARTICLES_PER_FEED, ProcessorConfig
from .exceptions import FetchError
from .logging_config import create_execution_logger
from .models import (
    Article,
    DeliveryResult,
    Feed,
    FeedBundle,
    RunReport,
    Summary,
    format_timestamp,
    select_articles,
)
from .storage import WatermarkStore


class ArticleSource(Protocol):
    def fetch_articles(
        self, url: str, limit: int, since: str | None = None
    ) -> list[Article]: ...


class TextSummarizer(Protocol):
    def summarize(self, content: str, prompt: str) -> str: ...


class BundleNotifier(Protocol):
    def send_bundle(self, destination: str, bundle: FeedBundle) -> DeliveryResult: ...


class FeedSource(Protocol):
    def list_feeds(self) -> list[Feed]: ...


def merge_feeds(configured: list[Feed], external: list[Feed]) -> list[Feed]:
    """Merge an external feed list into the configured one.

    External feeds win by id and come first; configured feeds whose id is not
    in the external list are appended in their original order. A watermark
    or custom prompt missing on an external feed is taken from the configured
    feed with the same id.
    """
    configured_by_id = {feed.id: feed for feed in configured}
    merged = []
    external_ids = set()
    for feed in external:
        external_ids.add(feed.id)
        local = configured_by_id.get(feed.id)
        if local is not None:
            if not feed.last_processed:
                feed.last_processed = local.last_processed
            if not feed.custom_prompt:
                feed.custom_prompt = local.custom_prompt
        merged.append(feed)

    merged.extend(feed for feed in configured if feed.id not in external_ids)
    return merged


class FeedPipeline:
    """Fetches, summarizes and delivers articles for a set of feeds.

    Every collaborator is injected: the article source, the summarizer, the
    notifier, the watermark store and, optionally, an external feed source.
    ``clock`` returns the run start time; it exists so tests can pin it.
    """

    def __init__(
        self,
        reader: ArticleSource,
        summarizer: TextSummarizer,
        notifier: BundleNotifier,
        watermark_store: WatermarkStore,
        feed_source: FeedSource | None = None,
        clock: Callable[[], datetime] | None = None,
        execution_id: str | None = None,
    ):
        self.reader = reader
        self.summarizer = summarizer
        self.notifier = notifier
        self.watermark_store = watermark_store
        self.feed_source = feed_source
        self.clock = clock or (lambda: datetime.now(UTC))
        self.logger = create_execution_logger("pipeline", execution_id)

    def process_feed(
        self,
        feed: Feed,
        default_prompt: str,
        max_articles: int = DEFAULT_ARTICLES_PER_FEED,
        only_new: bool = False,
    ) -> list[Summary]:
        """Turn one feed into summaries, newest article first.

        A reader failure is logged and yields an empty list. A summarization
        failure skips only that article.
        """
        try:
            return self._summarize_feed(feed, default_prompt, max_articles, only_new)
        except FetchError as e:
            self.logger.error(
                f"Error processing feed {feed.name}: {e}",
                feed_id=feed.id,
                feed_name=feed.name,
                error=str(e),
            )
            return []

    def _summarize_feed(
        self, feed: Feed, default_prompt: str, max_articles: int, only_new: bool
    ) -> list[Summary]:
        """Like process_feed, but a reader failure raises FetchError."""
        self.logger.info(f"Processing feed: {feed.name}", feed_id=feed.id, feed_name=feed.name)

        since = self._watermark_for(feed) if only_new else None
        try:
            articles = self.reader.fetch_articles(feed.url, max_articles, since)
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(f"Failed to fetch feed {feed.name}: {e}") from e

        # Re-applied here so ordering and the exclusive watermark hold for any reader
        articles = select_articles(articles, max_articles, since)
        if not articles:
            self.logger.warning(
                f"No {'new ' if since else ''}articles found in feed: {feed.name}",
                feed_id=feed.id,
                feed_name=feed.name,
                since=since,
            )
            return []

        prompt = feed.custom_prompt or default_prompt
        summaries = []
        for index, article in enumerate(articles):
            try:
                text = self.summarizer.summarize(article.effective_content(), prompt)
            except Exception as e:
                self.logger.log_article_processing(
                    article.title,
                    "summarization_failed",
                    success=False,
                    feed_id=feed.id,
                    feed_name=feed.name,
                    article_index=index,
                    error=str(e),
                )
                continue

            summaries.append(
                Summary(
                    feed_id=feed.id,
                    feed_name=feed.name,
                    title=article.title,
                    summary=text,
                    original_link=article.link,
                    published_at=article.pub_date or article.iso_date,
                    source=feed.name,
                )
            )
            self.logger.log_article_processing(
                article.title, "summarized", feed_id=feed.id, article_index=index
            )

        return summaries

    def _watermark_for(self, feed: Feed) -> str | None:
        return self.watermark_store.get(feed.id) or feed.last_processed

    def resolve_feeds(self, configured: list[Feed]) -> list[Feed]:
        """Configured feeds merged with the external feed source, if any."""
        if self.feed_source is None:
            return list(configured)
        try:
            external = self.feed_source.list_feeds()
        except Exception as e:
            self.logger.warning(
                f"External feed source unavailable, using configured feeds: {e}",
                error=str(e),
            )
            return list(configured)

        merged = merge_feeds(configured, external)
        self.logger.info(
            "Merged external feed list",
            configured_count=len(configured),
            external_count=len(external),
            merged_count=len(merged),
        )
        return merged

    def process_all_feeds(
        self, config: ProcessorConfig, only_new: bool | None = None
    ) -> RunReport:
        """Run every enabled feed once and report the outcome.

        A feed's failure never stops the batch. The watermark of a feed is
        moved to the run start time only after its bundle was delivered.

        Raises:
            ConfigurationError: If the configuration is unusable; nothing is
                processed in that case
        """
        config.validate()
        if only_new is None:
            only_new = config.only_new

        run_started = self.clock()
        run_timestamp = format_timestamp(run_started)
        self.logger.log_execution_start(run_timestamp=run_timestamp, only_new=only_new)

        feeds = self.resolve_feeds(config.feeds)
        enabled_feeds = [feed for feed in feeds if feed.enabled]
        self.logger.info(
            f"Processing {len(enabled_feeds)} enabled feeds",
            feed_count=len(feeds),
            enabled_count=len(enabled_feeds),
        )

        report = RunReport()
        for feed in enabled_feeds:
            self._process_one(feed, config, only_new, run_timestamp, report)

        self.logger.log_metrics(report.to_dict())
        self.logger.log_execution_end(
            success=report.failure_count == 0, metrics=report.to_dict()
        )
        return report

    def _process_one(
        self,
        feed: Feed,
        config: ProcessorConfig,
        only_new: bool,
        run_timestamp: str,
        report: RunReport,
    ) -> None:
        try:
            summaries = self._summarize_feed(
                feed, config.default_prompt, config.articles_per_feed, only_new
            )
        except Exception as e:
            message = f"Failed to process feed {feed.name}: {e}"
            self.logger.error(message, feed_id=feed.id, feed_name=feed.name, error=str(e))
            report.failure_count += 1
            report.errors.append(message)
            return

        if not summaries:
            # Nothing new is not a failure, and there is nothing to mark
            report.success_count += 1
            return

        bundle = FeedBundle(feed_id=feed.id, feed_name=feed.name, articles=summaries)
        try:
            self.notifier.send_bundle(config.webhook_url, bundle)
        except Exception as e:
            message = f"Failed to send bundle for feed {feed.name}: {e}"
            self.logger.error(message, feed_id=feed.id, feed_name=feed.name, error=str(e))
            report.failure_count += 1
            report.errors.append(message)
            return

        report.success_count += 1
        report.total_summaries += len(bundle)
        self.logger.log_feed_processing(feed.id, feed.name, len(bundle))

        try:
            self.watermark_store.set(feed.id, run_timestamp)
        except Exception as e:
            message = f"Failed to update watermark for feed {feed.name}: {e}"
            self.logger.error(message, feed_id=feed.id, feed_name=feed.name, error=str(e))
            report.errors.append(message)
            return
        feed.last_processed = run_timestamp
