"""Property-based tests for logging functionality."""

import json
import logging
from datetime import UTC, datetime
from io import StringIO

from hypothesis import given
from hypothesis import strategies as st

from feed_digest.config import ProcessorConfig
from feed_digest.logging_config import ExecutionLogger, StructuredFormatter
from feed_digest.models import Article, DeliveryResult, Feed
from feed_digest.processor import FeedPipeline
from feed_digest.storage import InMemoryWatermarkStore

WEBHOOK = "https://open.larksuite.com/open-apis/bot/v2/hook/abc"

domains = st.text(
    alphabet=st.characters(whitelist_categories=("Ll", "Nd")),
    min_size=3,
    max_size=20,
)


class StaticReader:
    def fetch_articles(self, url, limit, since=None):
        return [
            Article(
                title=f"Article from {url}",
                link=f"{url}/1",
                iso_date="2024-01-01T10:00:00.000Z",
                full_content="body",
            )
        ]


class EchoSummarizer:
    def summarize(self, content, prompt):
        return f"summary: {content}"


class AcceptingNotifier:
    def send_bundle(self, destination, bundle):
        return DeliveryResult(code=0, msg="success")


class TestLoggingProperties:
    """Property-based tests for logging functionality."""

    @given(
        st.text(max_size=200),
        st.fixed_dictionaries(
            {
                "feed_id": st.text(max_size=20),
                "feed_name": st.text(max_size=40),
                "article_index": st.integers(min_value=0, max_value=100),
            }
        ),
    )
    def test_structured_entries_are_json(self, message, context):
        """For any message and context, each entry is one JSON object carrying that context."""
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(StructuredFormatter())
        logger = ExecutionLogger("exec_test", "pipeline")
        logger.logger.addHandler(handler)
        original_level = logger.logger.level
        original_propagate = logger.logger.propagate
        logger.logger.setLevel(logging.INFO)
        logger.logger.propagate = False

        try:
            logger.info(message, **context)
        finally:
            logger.logger.removeHandler(handler)
            logger.logger.setLevel(original_level)
            logger.logger.propagate = original_propagate

        entry = json.loads(stream.getvalue())
        assert entry["message"] == message
        assert entry["level"] == "INFO"
        assert entry["execution_id"] == "exec_test"
        assert entry["component"] == "pipeline"
        assert entry["feed_id"] == context["feed_id"]
        assert entry["feed_name"] == context["feed_name"]
        assert entry["article_index"] == context["article_index"]

    @given(st.lists(domains, min_size=1, max_size=3, unique=True))
    def test_complete_logging_property(self, names):
        """For any batch run, there are logs for start, each feed, metrics and end."""
        log_capture = StringIO()
        handler = logging.StreamHandler(log_capture)

        root_logger = logging.getLogger()
        package_logger = logging.getLogger("feed_digest")
        pipeline_logger = logging.getLogger("feed_digest.pipeline")
        original_level = root_logger.level
        original_handlers = root_logger.handlers[:]
        original_levels = (package_logger.level, pipeline_logger.level)

        root_logger.handlers.clear()
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        package_logger.setLevel(logging.INFO)
        pipeline_logger.setLevel(logging.INFO)

        try:
            feeds = [
                Feed(id=name, url=f"https://{name}.com/feed", name=f"Feed {name}")
                for name in names
            ]
            pipeline = FeedPipeline(
                reader=StaticReader(),
                summarizer=EchoSummarizer(),
                notifier=AcceptingNotifier(),
                watermark_store=InMemoryWatermarkStore(),
                clock=lambda: datetime(2024, 1, 2, tzinfo=UTC),
            )

            report = pipeline.process_all_feeds(
                ProcessorConfig(feeds=feeds, webhook_url=WEBHOOK)
            )

            log_output = log_capture.getvalue()
            lines = [line for line in log_output.split("\n") if line.strip()]

            assert report.success_count == len(names)
            assert any("Starting" in line for line in lines), log_output
            assert any("Completed" in line for line in lines), log_output
            assert "Execution metrics" in log_output
            for feed in feeds:
                assert f"Processing feed: {feed.name}" in log_output
                assert f"Processed feed {feed.name}: 1 summaries" in log_output
        finally:
            root_logger.handlers.clear()
            root_logger.handlers.extend(original_handlers)
            root_logger.setLevel(original_level)
            package_logger.setLevel(original_levels[0])
            pipeline_logger.setLevel(original_levels[1])
            handler.close()
