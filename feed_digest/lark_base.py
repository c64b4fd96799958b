"""Lark Base (Bitable) integration: an externally managed feed list."""

import re
import time
from typing import Any
from urllib.parse import urlparse

import requests

from .config import LarkBaseConfig
from .exceptions import FeedSourceError
from .logging_config import create_execution_logger
from .models import Feed

LARK_API_BASE = "https://open.larksuite.com/open-apis"
LARK_API_BASE_CN = "https://open.feishu.cn/open-apis"
BASE_URL_PATTERN = re.compile(
    r"^https://[\w-]+\.(larksuite\.com|feishu\.cn)/base/[\w-]+"
)
PAGE_SIZE = 500
TOKEN_EXPIRY_BUFFER_SECONDS = 300


class LarkBaseFeedSource:
    """Reads feed definitions from a Lark Base table.

    Each table record becomes a Feed whose id is the record id. The URL field
    is required; the name falls back to the URL and enabled defaults to true.
    """

    def __init__(
        self,
        config: LarkBaseConfig,
        timeout: int = 30,
        execution_id: str | None = None,
    ):
        self.config = config
        self.timeout = timeout
        self.logger = create_execution_logger("lark_base", execution_id)
        self.session = requests.Session()
        self._app_access_token: str | None = None
        self._token_expiry: float = 0.0

    def validate_config(self) -> list[str]:
        """Return a list of configuration problems; empty when valid."""
        errors = []
        config = self.config
        if not config.app_id or not config.app_id.strip():
            errors.append("App ID is required")
        if not config.app_secret or not config.app_secret.strip():
            errors.append("App Secret is required")
        if not config.base_url or not config.base_url.strip():
            errors.append("Base URL is required")
        elif not BASE_URL_PATTERN.match(config.base_url):
            errors.append(
                "Base URL must be in format: https://[tenant].larksuite.com/base/[baseId] "
                "or https://[tenant].feishu.cn/base/[baseId]"
            )
        if not config.table_id or not config.table_id.strip():
            errors.append("Table ID is required")
        if not config.url_field_name or not config.url_field_name.strip():
            errors.append("URL field name cannot be empty")
        return errors

    @property
    def api_base(self) -> str:
        return LARK_API_BASE_CN if "feishu.cn" in self.config.base_url else LARK_API_BASE

    @property
    def base_id(self) -> str | None:
        match = re.search(r"/base/([\w-]+)", self.config.base_url)
        return match.group(1) if match else None

    def get_app_access_token(self) -> str:
        """Return a cached app access token, requesting a new one when expired."""
        if self._app_access_token and time.time() < self._token_expiry:
            return self._app_access_token

        data = self._request(
            "POST",
            f"{self.api_base}/auth/v3/app_access_token/internal",
            json={"app_id": self.config.app_id, "app_secret": self.config.app_secret},
        )
        token = data.get("app_access_token")
        if not token:
            raise FeedSourceError("Lark API returned no app access token")

        self._app_access_token = token
        expire = int(data.get("expire", 7200))
        self._token_expiry = time.time() + max(expire - TOKEN_EXPIRY_BUFFER_SECONDS, 0)
        return token

    def fetch_records(self) -> list[dict[str, Any]]:
        """Fetch every record of the table, following pagination."""
        errors = self.validate_config()
        if errors:
            raise FeedSourceError(
                f"Invalid Lark Base configuration: {', '.join(errors)}"
            )

        base_id = self.base_id
        if not base_id:
            raise FeedSourceError("Invalid base URL: could not extract base ID")

        token = self.get_app_access_token()
        url = f"{self.api_base}/bitable/v1/apps/{base_id}/tables/{self.config.table_id}/records"

        records: list[dict[str, Any]] = []
        page_token = None
        while True:
            params = {"page_size": PAGE_SIZE}
            if self.config.view_id:
                params["view_id"] = self.config.view_id
            if page_token:
                params["page_token"] = page_token

            data = self._request(
                "GET",
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
            page = data.get("data")
            if not page:
                raise FeedSourceError("Lark API returned no record data")

            records.extend(page.get("items") or [])
            page_token = page.get("page_token")
            if not page.get("has_more") or not page_token:
                break

        self.logger.info("Fetched Lark Base records", records_count=len(records))
        return records

    def convert_records_to_feeds(
        self, records: list[dict[str, Any]]
    ) -> tuple[list[Feed], list[str]]:
        """Convert table records to Feeds; invalid records are reported, not raised."""
        feeds: list[Feed] = []
        errors: list[str] = []

        for record in records:
            record_id = record.get("record_id", "")
            fields = record.get("fields") or {}

            url = fields.get(self.config.url_field_name)
            if isinstance(url, dict):
                # Hyperlink cells come back as {"link": ..., "text": ...}
                url = url.get("link")
            if not isinstance(url, str) or not url.strip():
                errors.append(f"Record {record_id}: Missing or invalid URL field")
                continue
            url = url.strip()

            parsed = urlparse(url)
            if not parsed.scheme or not parsed.netloc:
                errors.append(f"Record {record_id}: Invalid URL format: {url}")
                continue

            name = fields.get(self.config.name_field_name)
            if not isinstance(name, str) or not name.strip():
                name = url

            enabled = True
            raw_enabled = fields.get(self.config.enabled_field_name)
            if isinstance(raw_enabled, bool):
                enabled = raw_enabled
            elif isinstance(raw_enabled, str):
                enabled = raw_enabled.strip().lower() == "true"

            feeds.append(Feed(id=record_id, url=url, name=name.strip(), enabled=enabled))

        return feeds, errors

    def list_feeds(self) -> list[Feed]:
        """Return the feeds defined in the table.

        Raises:
            FeedSourceError: If the table cannot be read
        """
        feeds, errors = self.convert_records_to_feeds(self.fetch_records())
        for error in errors:
            self.logger.warning(f"Skipped Lark Base record: {error}")
        return feeds

    def test_connection(self) -> dict[str, Any]:
        """Check credentials and table access. Never raises."""
        errors = self.validate_config()
        if errors:
            return {
                "success": False,
                "message": f"Configuration validation failed: {', '.join(errors)}",
            }
        try:
            records = self.fetch_records()
        except FeedSourceError as e:
            return {"success": False, "message": str(e)}
        return {
            "success": True,
            "message": "Successfully connected to Lark Base",
            "record_count": len(records),
        }

    def _request(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise FeedSourceError(f"Lark Base request failed: {e}") from e
        except ValueError as e:
            raise FeedSourceError(f"Lark Base returned invalid JSON: {e}") from e

        if data.get("code") != 0:
            raise FeedSourceError(
                f"Lark API error: {data.get('msg')} (code: {data.get('code')})"
            )
        return data
