"""Data models for Feed Digest."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dateutil import parser as date_parser

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 or RFC 822 date string into an aware UTC datetime.

    Naive values are taken as UTC. Returns None for empty or unparseable input.
    """
    if not value:
        return None
    try:
        parsed = date_parser.parse(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        # Offsets near datetime.min/max cannot be shifted to UTC
        return parsed.astimezone(UTC)
    except (ValueError, TypeError, OverflowError):
        return None


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as UTC ISO-8601 with milliseconds and a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


@dataclass
class Feed:
    """A configured RSS/Atom source."""

    id: str
    url: str
    name: str
    enabled: bool = True
    custom_prompt: str | None = None
    last_processed: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Feed":
        """Build a Feed from the camelCase JSON shape of the feeds file."""
        return cls(
            id=str(data["id"]),
            url=data["url"],
            name=data.get("name") or data["url"],
            enabled=bool(data.get("enabled", True)),
            custom_prompt=data.get("customPrompt") or None,
            last_processed=data.get("lastProcessed") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "url": self.url,
            "name": self.name,
            "enabled": self.enabled,
        }
        if self.custom_prompt:
            data["customPrompt"] = self.custom_prompt
        if self.last_processed:
            data["lastProcessed"] = self.last_processed
        return data


@dataclass
class Article:
    """Represents a single RSS/Atom feed entry."""

    title: str = "Untitled"
    link: str | None = None
    pub_date: str | None = None
    iso_date: str | None = None
    full_content: str = ""
    content_snippet: str = ""
    description: str = ""
    creator: str | None = None

    def effective_timestamp(self) -> datetime:
        """Normalized date first, then the raw publish date, else epoch 0."""
        for value in (self.iso_date, self.pub_date):
            parsed = parse_timestamp(value)
            if parsed is not None:
                return parsed
        return EPOCH

    def effective_content(self) -> str:
        for candidate in (
            self.full_content,
            self.content_snippet,
            self.description,
            self.title,
        ):
            if candidate and candidate.strip():
                return candidate
        return ""


def select_articles(
    articles: list[Article], limit: int, since: str | None = None
) -> list[Article]:
    """Filter articles newer than ``since``, sort newest first and truncate.

    The comparison is exclusive: an article published exactly at ``since``
    is dropped.
    """
    selected = list(articles)
    since_moment = parse_timestamp(since)
    if since_moment is not None:
        selected = [a for a in selected if a.effective_timestamp() > since_moment]

    # sorted() is stable, so articles with equal timestamps keep feed order
    selected = sorted(selected, key=lambda a: a.effective_timestamp(), reverse=True)
    return selected[: max(limit, 0)]


@dataclass
class Summary:
    """A summarized article ready for posting."""

    feed_id: str
    feed_name: str
    title: str
    summary: str
    original_link: str | None = None
    published_at: str | None = None
    source: str | None = None


@dataclass
class FeedBundle:
    """All summaries produced for one feed in one run."""

    feed_id: str
    feed_name: str
    articles: list[Summary]

    def __post_init__(self) -> None:
        if not self.articles:
            raise ValueError(f"Feed bundle for {self.feed_id} cannot be empty")

    def __len__(self) -> int:
        return len(self.articles)


@dataclass
class DeliveryResult:
    """Response from the Lark webhook API."""

    code: int
    msg: str
    data: dict[str, Any] | None = None


@dataclass
class RunReport:
    """Outcome of one batch run over all enabled feeds."""

    success_count: int = 0
    failure_count: int = 0
    total_summaries: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "total_summaries": self.total_summaries,
            "errors": list(self.errors),
        }
