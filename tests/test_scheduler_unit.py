"""Unit tests for the feed scheduler."""

import threading
from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from feed_digest.config import ProcessorConfig
from feed_digest.exceptions import ConfigurationError
from feed_digest.models import Feed, RunReport
from feed_digest.scheduler import (
    FeedScheduler,
    ScheduledTask,
    cron_schedule,
    validate_cron_expression,
)

WEBHOOK = "https://open.larksuite.com/open-apis/bot/v2/hook/abc"


def make_scheduler(pipeline=None):
    pipeline = pipeline or Mock()
    config = ProcessorConfig(feeds=[], webhook_url=WEBHOOK)
    return FeedScheduler(pipeline, config), pipeline


class TestValidateCronExpression:
    """Unit tests for cron expression validation."""

    def test_valid_expressions(self):
        for expression in ("0 9 * * *", "*/5 * * * *", "0 8 * * 1-5", "30 6 1 * *"):
            assert validate_cron_expression(expression), expression

    def test_six_field_expressions_with_seconds(self):
        for expression in ("0 0 9 * * *", "*/30 * * * * *", "15 0 8 * * 1-5"):
            assert validate_cron_expression(expression), expression

    def test_invalid_expressions(self):
        invalid = (
            "",
            "not a cron",
            "61 * * * *",
            "* * * *",
            "61 0 9 * * *",
            "0 0 0 9 * * *",
            None,
        )
        for expression in invalid:
            assert not validate_cron_expression(expression), expression

    def test_schedule_with_leading_seconds_field(self):
        start = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)

        assert cron_schedule("30 0 9 * * *", start).get_next(datetime) == datetime(
            2024, 1, 1, 9, 0, 30, tzinfo=UTC
        )
        assert cron_schedule("0 9 * * *", start).get_next(datetime) == datetime(
            2024, 1, 1, 9, 0, tzinfo=UTC
        )


class TestFeedScheduler:
    """Unit tests for FeedScheduler."""

    def test_run_once_returns_report(self):
        scheduler, pipeline = make_scheduler()
        pipeline.process_all_feeds.return_value = RunReport(success_count=1)

        report = scheduler.run_once(only_new=True)

        assert report.success_count == 1
        pipeline.process_all_feeds.assert_called_once_with(scheduler.config, only_new=True)
        assert scheduler.is_running is False

    def test_run_once_swallows_run_errors(self):
        scheduler, pipeline = make_scheduler()
        pipeline.process_all_feeds.side_effect = ConfigurationError("Webhook URL is not configured")

        assert scheduler.run_once(only_new=False) is None
        assert scheduler.is_running is False

    def test_run_once_reloads_configuration_each_run(self):
        first = ProcessorConfig(feeds=[], webhook_url=WEBHOOK)
        added = Feed(id="new", url="https://new.example.com/rss", name="New")
        second = ProcessorConfig(feeds=[added], webhook_url=WEBHOOK)
        loader = Mock(side_effect=[first, second])
        pipeline = Mock()
        pipeline.process_all_feeds.return_value = RunReport()
        scheduler = FeedScheduler(
            pipeline, ProcessorConfig(feeds=[], webhook_url=WEBHOOK), config_loader=loader
        )

        scheduler.run_once(only_new=True)
        scheduler.run_once(only_new=True)

        assert loader.call_count == 2
        configs = [c.args[0] for c in pipeline.process_all_feeds.call_args_list]
        assert configs == [first, second]
        assert [f.id for f in configs[1].feeds] == ["new"]

    def test_run_once_skips_run_when_reload_fails(self):
        pipeline = Mock()
        scheduler = FeedScheduler(
            pipeline,
            ProcessorConfig(feeds=[], webhook_url=WEBHOOK),
            config_loader=Mock(side_effect=ConfigurationError("Invalid JSON")),
        )

        assert scheduler.run_once(only_new=False) is None
        pipeline.process_all_feeds.assert_not_called()
        assert scheduler.is_running is False

    def test_overlapping_run_is_skipped(self):
        started = threading.Event()
        release = threading.Event()

        def slow_run(config, only_new):
            started.set()
            release.wait(5)
            return RunReport()

        scheduler, pipeline = make_scheduler()
        pipeline.process_all_feeds.side_effect = slow_run

        worker = threading.Thread(target=scheduler.run_once, args=(True,))
        worker.start()
        assert started.wait(5)

        assert scheduler.is_running is True
        assert scheduler.run_once(only_new=True) is None

        release.set()
        worker.join(5)
        assert pipeline.process_all_feeds.call_count == 1
        assert scheduler.is_running is False

    def test_schedule_feeds_rejects_invalid_cron(self):
        scheduler, _ = make_scheduler()

        with pytest.raises(ConfigurationError, match="Invalid cron expression"):
            scheduler.schedule_feeds("every morning")

    def test_schedule_feeds_does_not_run_immediately(self):
        scheduler, pipeline = make_scheduler()

        task = scheduler.schedule_feeds("0 9 * * *")
        try:
            assert task.running is True
            pipeline.process_all_feeds.assert_not_called()
        finally:
            task.stop(timeout=5)

        assert task.running is False

    def test_realtime_monitoring_runs_immediately_with_only_new(self):
        ran = threading.Event()
        scheduler, pipeline = make_scheduler()
        pipeline.process_all_feeds.side_effect = lambda config, only_new: (
            ran.set() or RunReport()
        )

        task = scheduler.start_realtime_monitoring(interval_minutes=5)
        try:
            assert ran.wait(5)
        finally:
            task.stop(timeout=5)

        pipeline.process_all_feeds.assert_called_once_with(scheduler.config, only_new=True)

    def test_realtime_monitoring_rejects_non_positive_interval(self):
        scheduler, _ = make_scheduler()

        with pytest.raises(ConfigurationError):
            scheduler.start_realtime_monitoring(interval_minutes=0)


class TestScheduledTask:
    """Unit tests for ScheduledTask."""

    def test_ticks_repeat_until_stopped(self):
        ticks = []
        enough = threading.Event()

        def tick():
            ticks.append(1)
            if len(ticks) >= 3:
                enough.set()

        task = ScheduledTask("test", tick, lambda: 0.01).start()
        assert enough.wait(5)
        task.stop(timeout=5)
        count = len(ticks)

        assert task.running is False
        assert count >= 3
        assert len(ticks) == count
