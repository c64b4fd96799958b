"""Scheduling of batch runs: cron mode and real-time polling mode."""

import threading
from collections.abc import Callable
from datetime import datetime

from croniter import croniter

from .config import ProcessorConfig
from .exceptions import ConfigurationError
from .logging_config import create_execution_logger
from .models import RunReport
from .processor import FeedPipeline


def _croniter_expression(cron_expression: str) -> str:
    """Return the expression in croniter's field order.

    Six-field expressions carry seconds first; croniter expects them last.
    """
    fields = cron_expression.split()
    if len(fields) == 6:
        fields = fields[1:] + fields[:1]
    return " ".join(fields)


def validate_cron_expression(cron_expression: str) -> bool:
    """Syntax-only check of a cron expression. Never raises.

    Accepts five fields, or six with a leading seconds field.
    """
    if not isinstance(cron_expression, str) or len(cron_expression.split()) not in (5, 6):
        return False
    try:
        return bool(croniter.is_valid(_croniter_expression(cron_expression)))
    except Exception:
        return False


def cron_schedule(cron_expression: str, start: datetime) -> croniter:
    """Iterator over the run times of a validated expression after ``start``."""
    return croniter(_croniter_expression(cron_expression), start)


class ScheduledTask:
    """A background thread invoking a callback on each tick until stopped."""

    def __init__(
        self,
        name: str,
        tick: Callable[[], None],
        next_delay: Callable[[], float],
        run_immediately: bool = False,
    ):
        self.name = name
        self._tick = tick
        self._next_delay = next_delay
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)

    def start(self) -> "ScheduledTask":
        self._thread.start()
        return self

    def stop(self, timeout: float | None = None) -> None:
        """Stop future ticks; a tick already running is allowed to finish."""
        self._stop_event.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop_event.is_set()

    def _loop(self) -> None:
        if self._run_immediately:
            self._tick()
        while not self._stop_event.wait(self._next_delay()):
            self._tick()


class FeedScheduler:
    """Drives FeedPipeline runs and never lets two runs overlap."""

    def __init__(
        self,
        pipeline: FeedPipeline,
        config: ProcessorConfig,
        execution_id: str | None = None,
        config_loader: Callable[[], ProcessorConfig] | None = None,
    ):
        self.pipeline = pipeline
        self.config = config
        self.config_loader = config_loader
        self.logger = create_execution_logger("scheduler", execution_id)
        self._run_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run_once(self, only_new: bool) -> RunReport | None:
        """Run one batch; returns None when a run is already in progress."""
        if not self._run_lock.acquire(blocking=False):
            self.logger.warning("Previous run still in progress, skipping tick")
            return None
        try:
            # Picks up feeds added to the store since startup
            if self.config_loader is not None:
                self.config = self.config_loader()
            report = self.pipeline.process_all_feeds(self.config, only_new=only_new)
        except Exception as e:
            # A scheduled tick has no caller to report to
            self.logger.error(f"Scheduled run failed: {e}", error=str(e))
            return None
        finally:
            self._run_lock.release()

        self.logger.info(
            "Feed processing completed: "
            f"{report.success_count} feeds processed, "
            f"{report.total_summaries} summaries sent",
            metrics=report.to_dict(),
        )
        return report

    def schedule_feeds(
        self, cron_expression: str, only_new: bool = False
    ) -> ScheduledTask:
        """Run on every tick of ``cron_expression``."""
        if not validate_cron_expression(cron_expression):
            raise ConfigurationError(f"Invalid cron expression: {cron_expression}")

        schedule = cron_schedule(cron_expression, datetime.now().astimezone())

        def next_delay() -> float:
            now = datetime.now().astimezone()
            next_run = schedule.get_next(datetime)
            while next_run <= now:
                next_run = schedule.get_next(datetime)
            return (next_run - now).total_seconds()

        task = ScheduledTask(
            "feed-digest-cron",
            lambda: self.run_once(only_new),
            next_delay,
        ).start()
        self.logger.info(
            f"Feed processing scheduled: {cron_expression}", only_new=only_new
        )
        return task

    def start_realtime_monitoring(self, interval_minutes: int = 5) -> ScheduledTask:
        """Run immediately, then every ``interval_minutes``, new articles only."""
        if interval_minutes <= 0:
            raise ConfigurationError("Real-time interval must be a positive number of minutes")

        task = ScheduledTask(
            "feed-digest-realtime",
            lambda: self.run_once(only_new=True),
            lambda: interval_minutes * 60.0,
            run_immediately=True,
        ).start()
        self.logger.info(
            f"Real-time monitoring started, checking every {interval_minutes} minutes",
            interval_minutes=interval_minutes,
        )
        return task
