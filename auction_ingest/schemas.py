from dataclasses import dataclass, field


NO_RESULTS = "NO_RESULTS"
EMPTY_HTML = "EMPTY_HTML"


@dataclass(frozen=True)
class FetchResult:
    url: str
    status_code: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(frozen=True)
class ResolvedLink:
    error_code: str = ""
    period: str = ""
    description: str = ""
    link: str = ""


@dataclass(frozen=True)
class ArchiveBytes:
    resolved_url: str
    status_code: int
    raw_bytes: bytes


@dataclass(frozen=True)
class SpreadsheetPayload:
    source_filename: str
    participant_count: int
    header_row: list[str]
    data_rows: list[list[str]]


@dataclass(frozen=True)
class ArchiveContents:
    payloads: list[SpreadsheetPayload]
    failures: list[tuple[str, Exception]] = field(default_factory=list)


@dataclass(frozen=True)
class CanonicalRow:
    year: int
    month: int
    region: str
    technology: str
    total_volume_auctioned: float
    total_volume_sold: float
    weighted_avg_price: float
    owner_volume: float | None = None
    owner_weighted_avg_price: float | None = None
    winner_count: int | None = None


@dataclass(frozen=True)
class NormalizeResult:
    rows: list[CanonicalRow]
    error: Exception | None = None


@dataclass(frozen=True)
class RefreshResult:
    run_id: str
    status: str
    sources_total: int
    sources_failed: int
    rows_stored: int
    files_processed: int
    files_skipped: int
    error: Exception | None
