"""
Command line entry point for Feed Digest.

Usage:
    feed-digest                 # Schedule with processSchedule, or real-time mode
    feed-digest --once          # Run one batch and exit
    feed-digest --once --new    # Run one batch, new articles only
"""

import argparse
import json
import signal
import sys
import threading
from datetime import UTC, datetime

from dotenv import load_dotenv

from .config import FeedsConfiguration, ProcessorConfig, Settings
from .exceptions import ConfigurationError
from .lark import LarkNotifier
from .lark_base import LarkBaseFeedSource
from .logging_config import create_execution_logger, setup_structured_logging
from .processor import FeedPipeline
from .rss import FeedReader
from .scheduler import FeedScheduler
from .storage import ConfigStore, build_config_store
from .summarize import Summarizer

EXAMPLE_CONFIGURATION = {
    "feeds": [
        {
            "id": "hn",
            "url": "https://news.ycombinator.com/rss",
            "name": "Hacker News",
            "enabled": True,
        }
    ],
    "webhookUrl": "https://open.larksuite.com/open-apis/bot/v2/hook/...",
    "defaultSystemPrompt": "Summarize concisely",
    "processSchedule": "0 9 * * *",
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Summarize new RSS articles and post them to Lark"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run feed processing once and exit",
    )
    parser.add_argument(
        "--new",
        action="store_true",
        help="Only process articles newer than each feed's last run",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the feeds configuration file (default: FEEDS_CONFIG_FILE)",
    )
    return parser.parse_args(argv)


def build_pipeline(
    settings: Settings,
    store: ConfigStore,
    feeds_config: FeedsConfiguration,
    execution_id: str,
) -> FeedPipeline:
    """Wire the production adapters into a FeedPipeline."""
    feed_source = None
    if feeds_config.lark_base:
        feed_source = LarkBaseFeedSource(feeds_config.lark_base, execution_id=execution_id)

    return FeedPipeline(
        reader=FeedReader(execution_id=execution_id),
        summarizer=Summarizer(settings.get_llm_config(), execution_id=execution_id),
        notifier=LarkNotifier(execution_id=execution_id),
        watermark_store=store,
        feed_source=feed_source,
        execution_id=execution_id,
    )


def load_processor_config(
    store: ConfigStore, settings: Settings, only_new: bool
) -> ProcessorConfig:
    """Read the stored configuration and validate it for one run."""
    processor_config = ProcessorConfig.from_feeds_configuration(
        store.load(),
        articles_per_feed=settings.articles_per_feed,
        only_new=only_new,
    )
    processor_config.validate()
    return processor_config


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)

    settings = Settings()
    if args.config:
        settings.feeds_config_file = args.config
    setup_structured_logging(settings.log_level)

    execution_id = f"cli_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"
    logger = create_execution_logger("main", execution_id)

    try:
        store = build_config_store(settings, execution_id)
        feeds_config = store.load()

        if not feeds_config.feeds and not feeds_config.lark_base:
            print(f"No feeds configured. Configure feeds in: {settings.feeds_config_file}")
            print("\nExample configuration:")
            print(json.dumps(EXAMPLE_CONFIGURATION, indent=2))
            return 0

        processor_config = ProcessorConfig.from_feeds_configuration(
            feeds_config,
            articles_per_feed=settings.articles_per_feed,
            only_new=args.new,
        )
        processor_config.validate()
        pipeline = build_pipeline(settings, store, feeds_config, execution_id)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.once:
        report = pipeline.process_all_feeds(processor_config, only_new=args.new)
        print("\nProcessing Results:")
        print(f"  Feeds processed: {report.success_count}")
        print(f"  Summaries sent: {report.total_summaries}")
        print(f"  Failures: {report.failure_count}")
        return 0

    scheduler = FeedScheduler(
        pipeline,
        processor_config,
        execution_id=execution_id,
        config_loader=lambda: load_processor_config(store, settings, args.new),
    )
    try:
        if feeds_config.realtime_monitoring:
            task = scheduler.start_realtime_monitoring(
                feeds_config.realtime_interval_minutes
            )
        else:
            task = scheduler.schedule_feeds(feeds_config.process_schedule, only_new=args.new)
    except ConfigurationError as e:
        logger.error(f"Scheduling error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print("Application is running. Press Ctrl+C to stop.")
    stopped = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stopped.set())
    try:
        stopped.wait()
    except KeyboardInterrupt:
        pass
    task.stop()
    logger.info("Scheduler stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
