from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, ParserRejectedMarkup
from bs4.element import Tag

from auction_ingest.errors import ParseError


ARCHIVE_MARKER = ".zip"


def _is_archive_href(href: object) -> bool:
    return isinstance(href, str) and ARCHIVE_MARKER in href.lower()


def _parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "html.parser")
    except ParserRejectedMarkup as exc:
        raise ParseError(f"parse html: {exc}") from exc


def resolve_archive_links(base_url: str, html: str) -> str:
    """Rewrite relative archive hrefs to absolute URLs against ``base_url``."""
    if not html or not html.strip():
        raise ParseError("html is empty")
    if not base_url:
        raise ParseError("base url is empty")

    base = urlsplit(base_url)
    if not base.scheme or not base.netloc:
        raise ParseError(f"base url is not absolute: {base_url!r}")

    soup = _parse(html)
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        if not _is_archive_href(href):
            continue
        try:
            parsed = urlsplit(href)
        except ValueError:
            continue
        if parsed.scheme:
            continue
        anchor["href"] = urljoin(base_url, href)

    return str(soup)


def _has_archive_link(table: Tag) -> bool:
    return table.find("a", href=_is_archive_href) is not None


def extract_candidate_tables(html: str) -> list[str]:
    """Return every outermost ``<table>`` that links to an archive."""
    if not html or not html.strip():
        return []

    soup = _parse(html)
    selected: list[Tag] = []
    selected_ids: set[int] = set()
    for table in soup.find_all("table"):
        if any(id(parent) in selected_ids for parent in table.parents):
            continue
        if _has_archive_link(table):
            selected.append(table)
            selected_ids.add(id(table))

    return [str(table) for table in selected]
