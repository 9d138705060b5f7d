import logging

import httpx

from auction_ingest.errors import FetchError
from auction_ingest.schemas import FetchResult


logger = logging.getLogger(__name__)


class PageFetcher:
    """Fetches source pages. A non-2xx status is returned, not raised."""

    def __init__(self, client: httpx.Client) -> None:
        self.client = client

    def fetch(self, url: str) -> FetchResult:
        if not url:
            raise FetchError("url is empty")

        try:
            response = self.client.get(url, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise FetchError(f"fetch url={url}: {exc}") from exc

        logger.debug("page fetched", extra={"source_url": url, "status": response.status_code})
        return FetchResult(url=url, status_code=response.status_code, body=response.text)
