from collections.abc import Callable
from io import BytesIO
from pathlib import Path
import zipfile

from openpyxl import Workbook
import pytest
from sqlalchemy.orm import Session, sessionmaker

from auction_ingest.audit import AuditLog
from auction_ingest.config import Settings
from auction_ingest.database import build_session_factory


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        app_name="auction-ingest",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        log_level="INFO",
        openai_api_key="test-key",
        openai_base_url="https://llm.test/v1",
        openai_model="gpt-4o-mini",
        http_timeout_seconds=5,
        llm_timeout_seconds=5,
        llm_max_attempts=3,
        retry_backoff_seconds=0,
        max_rows_per_batch=500,
        max_token_estimate=8000,
        derive_period_from_filename=True,
        refresh_interval_minutes=60,
        user_agent="auction-ingest-tests",
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def audit(session_factory: sessionmaker[Session]) -> AuditLog:
    return AuditLog(session_factory, "test-run")


def _workbook_bytes(sheets: dict[str, list[list[object]]]) -> bytes:
    workbook = Workbook()
    workbook.remove(workbook.active)
    for title, rows in sheets.items():
        worksheet = workbook.create_sheet(title)
        for row in rows:
            worksheet.append(row)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _archive_bytes(entries: dict[str, bytes]) -> bytes:
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture()
def make_workbook() -> Callable[[dict[str, list[list[object]]]], bytes]:
    return _workbook_bytes


@pytest.fixture()
def make_archive() -> Callable[[dict[str, bytes]], bytes]:
    return _archive_bytes


@pytest.fixture()
def results_sheet() -> list[list[object]]:
    return [
        ["Aggregated auction results"],
        ["Number of participants", 83],
        ["Auction date", "2025-08-19"],
        ["Region", "Technology", "Total volume auctioned", "Total volume sold", "Weighted average price"],
        ["Nordic", "Wind", "1200,5", 1100, "0,45"],
        ["Continental", "Solar", 900, 850, "0,52"],
    ]
