import httpx
import pytest

from auction_ingest.downloader import ArchiveDownloader, resolve_archive_url
from auction_ingest.errors import DownloadError, FetchError, InvalidLinkError
from auction_ingest.fetcher import PageFetcher


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_fetch_returns_bad_status_without_raising() -> None:
    fetcher = PageFetcher(_client(lambda request: httpx.Response(503, text="maintenance")))

    result = fetcher.fetch("https://example.org/results")

    assert result.status_code == 503
    assert result.ok is False
    assert result.body == "maintenance"


def test_fetch_rejects_empty_url() -> None:
    fetcher = PageFetcher(_client(lambda request: httpx.Response(200)))

    with pytest.raises(FetchError):
        fetcher.fetch("")


def test_fetch_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(FetchError):
        PageFetcher(_client(handler)).fetch("https://example.org/results")


@pytest.mark.parametrize(
    ("link", "source_url", "expected"),
    [
        ("files/go.zip", "https://example.org/auctions/page.html", "https://example.org/auctions/files/go.zip"),
        ("/go.zip", "https://example.org/auctions/page.html", "https://example.org/go.zip"),
        ("https://cdn.example.org/go.zip", "", "https://cdn.example.org/go.zip"),
    ],
)
def test_resolve_archive_url(link: str, source_url: str, expected: str) -> None:
    assert resolve_archive_url(link, source_url) == expected


def test_download_rejects_non_archive_link_before_network(audit) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    downloader = ArchiveDownloader(_client(handler))

    with pytest.raises(InvalidLinkError):
        downloader.download("https://example.org/results.pdf", "https://example.org/", audit)
    with pytest.raises(InvalidLinkError):
        downloader.download("", "https://example.org/", audit)


def test_download_resolves_relative_link(audit) -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, content=b"PK\x03\x04data")

    archive = ArchiveDownloader(_client(handler)).download("go.zip", "https://example.org/auctions/", audit)

    assert requested == ["https://example.org/auctions/go.zip"]
    assert archive.resolved_url == "https://example.org/auctions/go.zip"
    assert archive.raw_bytes == b"PK\x03\x04data"


def test_download_treats_bad_status_as_error(audit) -> None:
    downloader = ArchiveDownloader(_client(lambda request: httpx.Response(404)))

    with pytest.raises(DownloadError):
        downloader.download("https://example.org/go.zip", "", audit)
