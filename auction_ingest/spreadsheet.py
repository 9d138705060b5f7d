"""Archive and workbook extraction.

The heuristics only see ``list[list[str]]`` so they can be tested with literal
row fixtures. :class:`SpreadsheetExtractor` is the thin layer that opens the
zip archive and reads each workbook with openpyxl.
"""

from collections.abc import Sequence
from datetime import date, datetime
from io import BytesIO
import logging
import posixpath
import zipfile
import zlib

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from auction_ingest.errors import (
    ArchiveError,
    HeaderNotFoundError,
    NoDataRowsError,
    ParticipantsNotFoundError,
    StructuralError,
)
from auction_ingest.schemas import ArchiveContents, SpreadsheetPayload


logger = logging.getLogger(__name__)

Rows = list[list[str]]

AGGREGATED_TITLE_MARKER = "aggregated auction results"
PARTICIPANTS_LABEL = "number of participants"
REGION_LABEL = "region"
TECHNOLOGY_LABEL = "technology"
SPREADSHEET_SUFFIX = ".xlsx"

# SyntaxError covers the XML parse errors of both xml.etree and lxml.
WORKBOOK_ERRORS = (
    InvalidFileException,
    zipfile.BadZipFile,
    SyntaxError,
    KeyError,
    ValueError,
    TypeError,
    OSError,
)
# Encrypted members raise RuntimeError, unknown compression NotImplementedError.
ENTRY_READ_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, OSError, RuntimeError, NotImplementedError)


def cell_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def contains_marker(rows: Rows, marker: str) -> bool:
    marker = marker.lower()
    return any(marker in cell.lower() for row in rows for cell in row)


def select_sheet(sheets: Sequence[tuple[str, Rows]]) -> tuple[str, Rows]:
    """Pick the aggregated-results sheet, falling back to the first one."""
    if not sheets:
        raise StructuralError("workbook has no sheets")
    for name, rows in sheets:
        if contains_marker(rows, AGGREGATED_TITLE_MARKER):
            return name, rows
    return sheets[0]


def parse_int(value: str) -> int:
    cleaned = value.replace(" ", "").replace("\u00a0", "")
    return int(cleaned)


def find_participants(rows: Rows) -> int:
    for row in rows:
        for index, cell in enumerate(row):
            if PARTICIPANTS_LABEL not in cell.lower():
                continue
            if index + 1 >= len(row):
                raise ParticipantsNotFoundError("participants value is missing")
            value = row[index + 1].strip()
            if not value:
                raise ParticipantsNotFoundError("participants value is empty")
            try:
                participants = parse_int(value)
            except ValueError as exc:
                raise ParticipantsNotFoundError(f"participants value is not an integer: {value!r}") from exc
            if participants <= 0:
                raise ParticipantsNotFoundError(f"participants must be positive, got {participants}")
            return participants

    raise ParticipantsNotFoundError("participants row not found")


def find_header_row(rows: Rows) -> tuple[int, list[str], int, int]:
    """Return (row index, header cells, region column, technology column)."""
    for row_index, row in enumerate(rows):
        region_index = -1
        technology_index = -1
        for column, cell in enumerate(row):
            lowered = cell.lower()
            if region_index == -1 and REGION_LABEL in lowered:
                region_index = column
            if technology_index == -1 and TECHNOLOGY_LABEL in lowered:
                technology_index = column
        if region_index != -1 and technology_index != -1:
            header = list(row)
            while header and not header[-1].strip():
                header.pop()
            return row_index, header, region_index, technology_index

    raise HeaderNotFoundError("header row not found")


def fit_row(row: Sequence[str], width: int) -> list[str]:
    fitted = list(row[:width])
    fitted.extend([""] * (width - len(fitted)))
    return fitted


def row_is_empty(row: Sequence[str]) -> bool:
    return all(not cell.strip() for cell in row)


def collect_data_rows(rows: Rows, start: int, width: int, region_index: int, technology_index: int) -> Rows:
    """Collect the contiguous block of data rows that follows the header.

    Leading spacer rows are skipped. Once a row has been accepted, the first
    empty row or row with a blank region/technology cell ends the block.
    """
    collected: Rows = []
    for row in rows[start:]:
        fitted = fit_row(row, width)
        usable = (
            not row_is_empty(fitted)
            and fitted[region_index].strip() != ""
            and fitted[technology_index].strip() != ""
        )
        if not usable:
            if collected:
                break
            continue
        collected.append(fitted)
    return collected


def parse_sheets(source_filename: str, sheets: Sequence[tuple[str, Rows]]) -> SpreadsheetPayload:
    _, rows = select_sheet(sheets)
    participants = find_participants(rows)
    header_index, header, region_index, technology_index = find_header_row(rows)
    data_rows = collect_data_rows(rows, header_index + 1, len(header), region_index, technology_index)
    if not data_rows:
        raise NoDataRowsError(f"no data rows found after header in {source_filename}")

    return SpreadsheetPayload(
        source_filename=source_filename,
        participant_count=participants,
        header_row=header,
        data_rows=data_rows,
    )


def is_spreadsheet_entry(info: zipfile.ZipInfo) -> bool:
    if info.is_dir():
        return False
    name = info.filename
    if name.startswith("__MACOSX"):
        return False
    basename = posixpath.basename(name)
    if basename.startswith("._") or basename.startswith("~$"):
        return False
    return name.lower().endswith(SPREADSHEET_SUFFIX)


def read_workbook_sheets(content: bytes) -> list[tuple[str, Rows]]:
    try:
        workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    except WORKBOOK_ERRORS as exc:
        raise StructuralError(f"open workbook: {exc}") from exc

    try:
        sheets: list[tuple[str, Rows]] = []
        for worksheet in workbook.worksheets:
            rows = [[cell_text(value) for value in row] for row in worksheet.iter_rows(values_only=True)]
            sheets.append((worksheet.title, rows))
        return sheets
    except WORKBOOK_ERRORS as exc:
        raise StructuralError(f"read workbook: {exc}") from exc
    finally:
        workbook.close()


class SpreadsheetExtractor:
    def extract(self, raw_bytes: bytes) -> ArchiveContents:
        if not raw_bytes:
            raise ArchiveError("archive bytes are empty")

        try:
            archive = zipfile.ZipFile(BytesIO(raw_bytes))
        except zipfile.BadZipFile as exc:
            raise ArchiveError(f"open zip: {exc}") from exc

        payloads: list[SpreadsheetPayload] = []
        failures: list[tuple[str, Exception]] = []
        with archive:
            entries = [info for info in archive.infolist() if is_spreadsheet_entry(info)]
            if not entries:
                raise ArchiveError("no xlsx files found in zip")

            for info in entries:
                try:
                    content = archive.read(info)
                    payloads.append(parse_sheets(info.filename, read_workbook_sheets(content)))
                except StructuralError as exc:
                    logger.warning("spreadsheet entry skipped", extra={"source_file": info.filename, "error": str(exc)})
                    failures.append((info.filename, exc))
                except ENTRY_READ_ERRORS as exc:
                    logger.warning("spreadsheet entry unreadable", extra={"source_file": info.filename, "error": str(exc)})
                    failures.append((info.filename, ArchiveError(f"read {info.filename}: {exc}")))

        if not payloads:
            first_error = failures[0][1]
            raise ArchiveError(f"no spreadsheet in archive yielded data: {first_error}") from first_error
        return ArchiveContents(payloads=payloads, failures=failures)
