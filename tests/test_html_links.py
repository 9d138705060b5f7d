import pytest

from auction_ingest.errors import ParseError
from auction_ingest.html_links import extract_candidate_tables, resolve_archive_links


PAGE = """<html><body>
<p><a href="/about">About</a></p>
<table id="results">
  <tr><td>GO auction results 2024-2025</td><td><a href="files/go_results_2025.ZIP">download</a></td></tr>
</table>
<table id="other"><tr><td><a href="/report.pdf">report</a></td></tr></table>
<a href="https://cdn.example.org/archive.zip">mirror</a>
</body></html>"""


def test_resolve_rewrites_relative_archive_links_only() -> None:
    resolved = resolve_archive_links("https://example.org/auctions/index.html", PAGE)

    assert 'href="https://example.org/auctions/files/go_results_2025.ZIP"' in resolved
    assert 'href="/about"' in resolved
    assert 'href="/report.pdf"' in resolved
    assert 'href="https://cdn.example.org/archive.zip"' in resolved


def test_resolve_is_idempotent() -> None:
    once = resolve_archive_links("https://example.org/auctions/", PAGE)
    twice = resolve_archive_links("https://example.org/auctions/", once)

    assert once == twice


@pytest.mark.parametrize(
    ("base_url", "html"),
    [
        ("https://example.org/", ""),
        ("https://example.org/", "   "),
        ("", PAGE),
        ("not a url", PAGE),
    ],
)
def test_resolve_rejects_bad_input(base_url: str, html: str) -> None:
    with pytest.raises(ParseError):
        resolve_archive_links(base_url, html)


def test_prefilter_keeps_only_tables_with_archive_links() -> None:
    tables = extract_candidate_tables(PAGE)

    assert len(tables) == 1
    assert tables[0].startswith('<table id="results">')
    assert "go_results_2025.ZIP" in tables[0]


def test_prefilter_does_not_repeat_nested_tables() -> None:
    html = (
        '<table id="outer"><tr><td>'
        '<table id="inner"><tr><td><a href="a.zip">a</a></td></tr></table>'
        "</td></tr></table>"
    )

    tables = extract_candidate_tables(html)

    assert len(tables) == 1
    assert 'id="outer"' in tables[0]


@pytest.mark.parametrize("html", ["", "<p>nothing here</p>", "<table><tr><td>no links</td></tr></table>"])
def test_prefilter_returns_empty_list_without_candidates(html: str) -> None:
    assert extract_candidate_tables(html) == []
