"""Lark webhook notifier for Feed Digest."""

import json
import time
import urllib.error
import urllib.request
from typing import Any
from urllib.parse import urlparse

from .config import is_lark_webhook_url
from .exceptions import DeliveryError
from .logging_config import create_execution_logger
from .models import DeliveryResult, FeedBundle, Summary

SEPARATOR = "─" * 40
TEST_MESSAGE = "RSS Summary System - Webhook Test"


class LarkNotifier:
    """Posts summaries to a Lark group chat through a custom-bot webhook."""

    def __init__(
        self,
        retry_attempts: int = 3,
        backoff_factor: float = 2.0,
        timeout: int = 30,
        execution_id: str | None = None,
    ):
        self.retry_attempts = retry_attempts
        self.backoff_factor = backoff_factor
        self.timeout = timeout
        self.logger = create_execution_logger("lark_notifier", execution_id)

    def send_bundle(self, destination: str, bundle: FeedBundle) -> DeliveryResult:
        """Send every summary of one feed as a single message.

        Args:
            destination: Lark webhook URL
            bundle: Summaries for one feed

        Returns:
            The Lark API response

        Raises:
            DeliveryError: If the URL is not a Lark webhook or delivery fails
        """
        self._check_destination(destination)
        self.logger.info(
            "Sending feed bundle",
            feed_id=bundle.feed_id,
            feed_name=bundle.feed_name,
            articles_count=len(bundle.articles),
            webhook_host=urlparse(destination).hostname,
        )
        return self._post(destination, self.format_consolidated_message(bundle))

    def send_summary(self, destination: str, summary: Summary) -> DeliveryResult:
        """Send a single article summary as its own message."""
        self._check_destination(destination)
        return self._post(destination, self.format_message(summary))

    def validate_webhook_url(self, destination: str) -> bool:
        """Send a test message; True when Lark accepted it. Never raises."""
        try:
            self._check_destination(destination)
            self._post(destination, self._text_message(TEST_MESSAGE))
            return True
        except DeliveryError as e:
            self.logger.warning(f"Webhook validation failed: {e}")
            return False

    def format_consolidated_message(self, bundle: FeedBundle) -> dict[str, Any]:
        """Format a feed bundle as a Lark text message."""
        text = f"📰 {bundle.feed_name}\n"
        text += f"📊 {len(bundle.articles)} new articles\n"
        text += f"{SEPARATOR}\n\n"

        for index, article in enumerate(bundle.articles, start=1):
            text += f"【{index}】{article.title}\n"
            if article.original_link:
                text += f"🔗 {article.original_link}\n"
            text += f"\n{article.summary}\n"
            if article.published_at:
                text += f"⏰ {article.published_at}\n"
            text += "\n"

        text += f"{SEPARATOR}\n"
        text += f"Source: {bundle.articles[0].source or bundle.feed_name}"
        return self._text_message(text)

    def format_message(self, summary: Summary) -> dict[str, Any]:
        """Format one summary as a Lark text message."""
        text = f"📰 {summary.feed_name}\n\n"
        text += f"Title: {summary.title}\n"
        if summary.original_link:
            text += f"Link: {summary.original_link}\n"
        text += f"\nSummary:\n{summary.summary}\n"
        if summary.published_at:
            text += f"\nPublished: {summary.published_at}\n"
        text += f"\nSource: {summary.source or summary.feed_name}"
        return self._text_message(text)

    def handle_rate_limit(self, retry_count: int) -> None:
        """Handle rate limiting with exponential backoff."""
        backoff_time = self.backoff_factor**retry_count
        self.logger.warning(
            f"Rate limited, waiting {backoff_time} seconds before retry {retry_count + 1}",
            retry_count=retry_count,
            backoff_time=backoff_time,
        )
        time.sleep(backoff_time)

    def _check_destination(self, destination: str) -> None:
        if not destination:
            raise DeliveryError("Lark webhook URL is required")
        if not is_lark_webhook_url(destination):
            raise DeliveryError("Invalid Lark webhook URL")

    def _text_message(self, text: str) -> dict[str, Any]:
        return {"msg_type": "text", "content": {"text": text}}

    def _post(self, url: str, message: dict[str, Any]) -> DeliveryResult:
        """POST a message with retries on HTTP 429."""
        payload = json.dumps(message, ensure_ascii=False).encode("utf-8")

        for attempt in range(self.retry_attempts):
            request = urllib.request.Request(
                url,
                data=payload,
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": "Feed-Digest/1.0",
                },
                method="POST",
            )
            try:
                with urllib.request.urlopen(request, timeout=self.timeout) as response:
                    body = json.loads(response.read().decode("utf-8") or "{}")
            except urllib.error.HTTPError as e:
                if e.code == 429 and attempt < self.retry_attempts - 1:
                    self.handle_rate_limit(attempt)
                    continue
                raise DeliveryError(
                    f"Failed to send message to Lark: HTTP {e.code} {e.reason}"
                ) from e
            except urllib.error.URLError as e:
                raise DeliveryError(
                    f"Failed to send message to Lark: {e.reason}"
                ) from e
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise DeliveryError(
                    f"Failed to send message to Lark: invalid response body ({e})"
                ) from e

            # Lark answers 200 with a non-zero code for application errors
            code = body.get("code", body.get("StatusCode", 0))
            msg = body.get("msg", body.get("StatusMessage", ""))
            if code != 0:
                raise DeliveryError(
                    f"Lark API error (code: {code}): {msg or 'Unknown error'}"
                )

            self.logger.info("Message sent successfully to Lark", attempt=attempt + 1)
            return DeliveryResult(code=code, msg=msg, data=body.get("data"))

        raise DeliveryError("Failed to send message to Lark: max retry attempts reached")
