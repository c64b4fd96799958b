"""RSS feed reading for Feed Digest."""

from datetime import UTC, datetime
from time import struct_time
from urllib.parse import urlparse

import feedparser
import requests
from bs4 import BeautifulSoup

from .exceptions import FetchError
from .logging_config import create_execution_logger
from .models import Article, format_timestamp, select_articles


class FeedReader:
    """Fetches RSS/Atom feeds and normalizes their entries into Articles."""

    def __init__(self, timeout: int = 30, execution_id: str | None = None):
        """Initialize FeedReader.

        Args:
            timeout: HTTP request timeout in seconds
            execution_id: Execution ID for logging context
        """
        self.timeout = timeout
        self.logger = create_execution_logger("feed_reader", execution_id)
        self.session = requests.Session()
        self.session.headers.update(
            {"User-Agent": "Feed-Digest/1.0 (RSS to Lark summary bot)"}
        )

    def fetch_articles(
        self, url: str, limit: int = 10, since: str | None = None
    ) -> list[Article]:
        """Fetch a feed and return its newest articles.

        Args:
            url: URL of the RSS/Atom feed
            limit: Maximum number of articles to return
            since: Optional ISO timestamp; only strictly newer articles are kept

        Returns:
            Articles sorted newest first

        Raises:
            FetchError: If the feed cannot be downloaded or parsed
        """
        self.logger.info("Fetching feed", feed_url=url, limit=limit, since=since)
        parsed = self._download_and_parse(url)

        articles = []
        for entry in parsed.entries:
            try:
                articles.append(self.normalize_entry(entry))
            except Exception as e:
                self.logger.warning(
                    f"Failed to normalize entry from {url}: {e}",
                    feed_url=url,
                    error=str(e),
                )

        selected = select_articles(articles, limit, since)
        self.logger.info(
            "Fetched feed",
            feed_url=url,
            total_entries=len(parsed.entries),
            articles_count=len(selected),
        )
        return selected

    def validate(self, url: str) -> bool:
        """Best-effort check that ``url`` serves a feed. Never raises."""
        try:
            parsed = self._download_and_parse(url)
        except FetchError:
            return False
        except Exception as e:
            self.logger.warning(f"Unexpected error validating feed: {e}", feed_url=url)
            return False
        return bool(parsed.feed.get("title") or parsed.entries)

    def _download_and_parse(self, url: str) -> feedparser.FeedParserDict:
        parsed_url = urlparse(url)
        if parsed_url.scheme not in ("http", "https") or not parsed_url.netloc:
            raise FetchError(f"Invalid feed URL: {url}")

        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            self.logger.error(
                f"Failed to download feed {url}: {e}", feed_url=url, error=str(e)
            )
            raise FetchError(f"Failed to fetch RSS feed from {url}: {e}") from e

        feed = feedparser.parse(response.content)

        # bozo is set for recoverable issues too; only fail when nothing parsed
        if feed.bozo and not feed.entries and not feed.feed:
            raise FetchError(
                f"Failed to parse RSS feed from {url}: "
                f"{getattr(feed, 'bozo_exception', 'unknown error')}"
            )
        if feed.bozo:
            self.logger.warning(
                f"Feed parsing warning for {url}: {getattr(feed, 'bozo_exception', '')}",
                feed_url=url,
            )
        return feed

    def normalize_entry(self, entry) -> Article:
        """Normalize a feedparser entry into an Article."""
        full_content = ""
        contents = entry.get("content") or []
        if contents:
            full_content = contents[0].get("value", "") or ""

        description = entry.get("summary") or entry.get("description") or ""

        return Article(
            title=(entry.get("title") or "").strip() or "Untitled",
            link=entry.get("link") or None,
            pub_date=entry.get("published") or entry.get("updated") or None,
            iso_date=self._iso_date(entry),
            full_content=full_content,
            content_snippet=self.clean_html_content(full_content or description),
            description=description,
            creator=entry.get("author") or None,
        )

    def _iso_date(self, entry) -> str | None:
        for key in ("published_parsed", "updated_parsed"):
            value = entry.get(key)
            if isinstance(value, struct_time):
                return format_timestamp(datetime(*value[:6], tzinfo=UTC))
        return None

    def clean_html_content(self, content: str | None) -> str:
        """Remove HTML tags from content and normalize whitespace."""
        if not content:
            return ""

        if "<" not in content and ">" not in content:
            return " ".join(content.split())

        soup = BeautifulSoup(content, "html.parser")
        for script in soup(["script", "style"]):
            script.decompose()

        text = soup.get_text(separator=" ")
        text = text.replace("<", "").replace(">", "")
        return " ".join(text.split())
