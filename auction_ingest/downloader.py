import logging
from urllib.parse import urljoin, urlsplit

import httpx

from auction_ingest.audit import STAGE_ARCHIVE_DOWNLOAD, AuditLog
from auction_ingest.errors import DownloadError, InvalidLinkError
from auction_ingest.schemas import ArchiveBytes


logger = logging.getLogger(__name__)


def resolve_archive_url(link: str, source_url: str) -> str:
    if not link:
        raise InvalidLinkError("archive link is empty")

    try:
        parsed = urlsplit(link)
    except ValueError as exc:
        raise InvalidLinkError(f"parse link: {exc}") from exc
    if parsed.scheme:
        return link

    if not source_url:
        raise InvalidLinkError("source url is empty")
    try:
        return urljoin(source_url, link)
    except ValueError as exc:
        raise InvalidLinkError(f"resolve link against {source_url}: {exc}") from exc


class ArchiveDownloader:
    def __init__(self, client: httpx.Client) -> None:
        self.client = client

    def download(self, link: str, source_url: str, audit: AuditLog) -> ArchiveBytes:
        try:
            archive_url = resolve_archive_url(link, source_url)
            if not archive_url.lower().endswith(".zip"):
                raise InvalidLinkError(f"archive url does not end with .zip: {archive_url}")
        except InvalidLinkError as exc:
            audit.fail(STAGE_ARCHIVE_DOWNLOAD, str(exc))
            raise

        try:
            response = self.client.get(archive_url, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            audit.fail(STAGE_ARCHIVE_DOWNLOAD, f"download url={archive_url}: {exc}")
            raise DownloadError(f"download {archive_url}: {exc}") from exc

        if not 200 <= response.status_code < 300:
            audit.fail(STAGE_ARCHIVE_DOWNLOAD, f"status={response.status_code} url={archive_url}")
            raise DownloadError(f"archive download failed with status {response.status_code}: {archive_url}")

        body = response.content
        audit.success(STAGE_ARCHIVE_DOWNLOAD, f"status={response.status_code} url={archive_url} bytes={len(body)}")
        logger.info("archive downloaded", extra={"run_id": audit.run_id, "url": archive_url, "bytes": len(body)})
        return ArchiveBytes(resolved_url=archive_url, status_code=response.status_code, raw_bytes=body)
