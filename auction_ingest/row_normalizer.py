import json
import logging
import posixpath
from typing import Any

from auction_ingest.audit import STAGE_ROW_NORMALIZE, AuditLog
from auction_ingest.errors import (
    InvalidPayloadError,
    PayloadTooLargeError,
    PipelineError,
    ResponseFormatError,
    TransportError,
    ValidationError,
)
from auction_ingest.llm_client import ChatCompletionClient, parse_json_object
from auction_ingest.retry import run_with_retries
from auction_ingest.schemas import CanonicalRow, NormalizeResult, SpreadsheetPayload


logger = logging.getLogger(__name__)

SYNTHETIC_CELL_LENGTH = 8
CHARS_PER_TOKEN = 4

MONTHS = (
    "january",
    "february",
    "march",
    "april",
    "may",
    "june",
    "july",
    "august",
    "september",
    "october",
    "november",
    "december",
)

NUMBER_OR_NULL = {"type": ["number", "null"]}


def auction_results_schema(include_period: bool) -> dict[str, Any]:
    row_properties: dict[str, Any] = {
        "region": {"type": "string"},
        "technology": {"type": "string"},
        "total_volume_auctioned": {"type": "number"},
        "total_volume_sold": {"type": "number"},
        "weighted_avg_price_eur_per_mwh": {"type": "number"},
        "my_total_volume": NUMBER_OR_NULL,
        "my_weighted_avg_price_eur_per_mwh": NUMBER_OR_NULL,
        "number_of_winners": {"type": ["integer", "null"]},
    }
    if include_period:
        row_properties = {"year": {"type": "integer"}, "month": {"type": "integer"}, **row_properties}

    return {
        "type": "json_schema",
        "json_schema": {
            "name": "auction_results",
            "strict": True,
            "schema": {
                "type": "object",
                "properties": {
                    "source_file": {"type": "string", "description": "Original XLSX file name"},
                    "participants": {"type": "integer", "description": "Number of participants in the auction"},
                    "rows": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": row_properties,
                            "required": list(row_properties),
                            "additionalProperties": False,
                        },
                    },
                },
                "required": ["source_file", "participants", "rows"],
                "additionalProperties": False,
            },
        },
    }


def split_rows(rows: list[list[str]], max_rows: int) -> list[list[list[str]]]:
    if max_rows <= 0 or not rows:
        return [rows]
    return [rows[start : start + max_rows] for start in range(0, len(rows), max_rows)]


def estimate_tokens(row_count: int, column_count: int) -> int:
    """Rough pre-flight estimate, not a real token count."""
    if row_count <= 0 or column_count <= 0:
        return 0
    return row_count * column_count * SYNTHETIC_CELL_LENGTH // CHARS_PER_TOKEN


def parse_period_from_filename(source_file: str) -> tuple[int, int]:
    """Find the ``<MonthName>_<Year>`` token pair in an archive entry name."""
    parts = posixpath.basename(source_file).split("_")
    for index, part in enumerate(parts):
        token = part.strip().lower()
        if token not in MONTHS:
            continue
        if index + 1 >= len(parts):
            raise ValidationError(f"year token missing after month in {source_file!r}")

        year_token = parts[index + 1].strip()
        for suffix in (".xlsx", ".xls"):
            if year_token.lower().endswith(suffix):
                year_token = year_token[: -len(suffix)]
        try:
            year = int(year_token)
        except ValueError as exc:
            raise ValidationError(f"parse year {year_token!r} in {source_file!r}") from exc
        if year <= 0:
            raise ValidationError(f"year {year_token!r} in {source_file!r} is not positive")
        return year, MONTHS.index(token) + 1

    raise ValidationError(f"month not found in source file {source_file!r}")


def _exact_int(value: object, field: str, index: int) -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"row {index} {field} is empty")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"row {index} {field} is not an integer: {value}")
        value = int(value)
    if not isinstance(value, int):
        raise ValidationError(f"row {index} {field} is not an integer: {value!r}")
    if value == 0:
        raise ValidationError(f"row {index} {field} is empty")
    return value


def _number(value: object, field: str, index: int) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"row {index} {field} is not a number: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip().replace(" ", "").replace(",", ".")
        if cleaned in {"", "-"}:
            return None
        try:
            return float(cleaned)
        except ValueError as exc:
            raise ValidationError(f"row {index} {field} is not a number: {value!r}") from exc
    raise ValidationError(f"row {index} {field} is not a number: {value!r}")


def _text(value: object, field: str, index: int) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"row {index} {field} is empty")
    return value.strip()


def validate_row(raw: object, index: int, period: tuple[int, int] | None = None) -> CanonicalRow:
    """Build a CanonicalRow from one model row; ``period`` overrides year/month."""
    if not isinstance(raw, dict):
        raise ResponseFormatError(f"row {index} is not an object")

    if period is not None:
        year, month = period
        if year == 0:
            raise ValidationError(f"row {index} year is empty")
    else:
        year = _exact_int(raw.get("year"), "year", index)
        month = _exact_int(raw.get("month"), "month", index)
    if not 1 <= month <= 12:
        raise ValidationError(f"row {index} month is out of range: {month}")

    winners = raw.get("number_of_winners")
    winner_count = None if winners is None else _exact_int(winners, "number_of_winners", index)

    return CanonicalRow(
        year=year,
        month=month,
        region=_text(raw.get("region"), "region", index),
        technology=_text(raw.get("technology"), "technology", index),
        total_volume_auctioned=_number(raw.get("total_volume_auctioned"), "total_volume_auctioned", index) or 0.0,
        total_volume_sold=_number(raw.get("total_volume_sold"), "total_volume_sold", index) or 0.0,
        weighted_avg_price=_number(
            raw.get("weighted_avg_price_eur_per_mwh"), "weighted_avg_price_eur_per_mwh", index
        )
        or 0.0,
        owner_volume=_number(raw.get("my_total_volume"), "my_total_volume", index),
        owner_weighted_avg_price=_number(
            raw.get("my_weighted_avg_price_eur_per_mwh"), "my_weighted_avg_price_eur_per_mwh", index
        ),
        winner_count=winner_count,
    )


def build_rows_prompt(payload: SpreadsheetPayload, rows: list[list[str]], batch: int, derive_period: bool) -> str:
    request = {
        "source_file": payload.source_filename,
        "participants": payload.participant_count,
        "headers": payload.header_row,
        "rows": rows,
        "batch": batch,
    }
    if derive_period:
        period_rule = "6. Do not include year or month fields; they are derived from source_file."
    else:
        period_rule = "6. Include integer year and month fields on every row, taken from the data or source_file."

    return "\n".join(
        [
            "Instructions:",
            "1. Convert the provided rows into the auction_results schema.",
            "2. Map headers to canonical field names.",
            "3. Convert decimal commas to decimal points.",
            '4. Convert "-" or empty cells to null.',
            "5. Coerce numeric values to numbers.",
            period_rule,
            "7. Return only JSON that matches the provided schema.",
            "",
            "Payload:",
            json.dumps(request, ensure_ascii=False),
        ]
    )


class RowNormalizer:
    def __init__(
        self,
        llm: ChatCompletionClient,
        *,
        max_attempts: int,
        backoff_seconds: float,
        max_rows_per_batch: int,
        max_token_estimate: int,
        derive_period_from_filename: bool = True,
    ) -> None:
        self.llm = llm
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_rows_per_batch = max_rows_per_batch
        self.max_token_estimate = max_token_estimate
        self.derive_period_from_filename = derive_period_from_filename
        self.response_format = auction_results_schema(include_period=not derive_period_from_filename)

    def normalize(self, payload: SpreadsheetPayload, audit: AuditLog) -> NormalizeResult:
        """Normalize every batch of ``payload``.

        Failed batches do not stop the others. Rows from successful batches
        come back together with the first batch error; only when every batch
        fails is that error raised.
        """
        self._check_payload(payload)

        batches = split_rows(payload.data_rows, self.max_rows_per_batch)
        estimate = estimate_tokens(len(batches[0]), len(payload.header_row))
        ok = estimate <= self.max_token_estimate
        precheck = (
            f"source_file={payload.source_filename} rows={len(payload.data_rows)} batches={len(batches)} "
            f"estimate={estimate} max_tokens={self.max_token_estimate} max_rows={self.max_rows_per_batch} ok={ok}"
        )
        if not ok:
            audit.fail(STAGE_ROW_NORMALIZE, precheck)
            raise PayloadTooLargeError(
                f"payload {payload.source_filename} estimate {estimate} exceeds token budget {self.max_token_estimate}"
            )
        audit.success(STAGE_ROW_NORMALIZE, precheck)

        rows: list[CanonicalRow] = []
        first_error: PipelineError | None = None
        for batch_index, batch_rows in enumerate(batches, start=1):
            try:
                rows.extend(self._normalize_batch(payload, batch_rows, batch_index, audit))
            except PipelineError as exc:
                audit.fail(STAGE_ROW_NORMALIZE, f"source_file={payload.source_filename} batch={batch_index}: {exc}")
                logger.warning(
                    "row batch failed",
                    extra={
                        "run_id": audit.run_id,
                        "source_file": payload.source_filename,
                        "batch": batch_index,
                        "error": str(exc),
                    },
                )
                if first_error is None:
                    first_error = exc

        if not rows:
            if first_error is not None:
                raise first_error
            raise ValidationError(f"no rows normalized for {payload.source_filename}")
        return NormalizeResult(rows=rows, error=first_error)

    def _check_payload(self, payload: SpreadsheetPayload) -> None:
        if not payload.source_filename:
            raise InvalidPayloadError("source file is empty")
        if payload.participant_count <= 0:
            raise InvalidPayloadError("participants must be positive")
        if not payload.header_row:
            raise InvalidPayloadError("headers are empty")
        if not payload.data_rows:
            raise InvalidPayloadError("rows are empty")

    def _normalize_batch(
        self,
        payload: SpreadsheetPayload,
        batch_rows: list[list[str]],
        batch_index: int,
        audit: AuditLog,
    ) -> list[CanonicalRow]:
        prompt = build_rows_prompt(payload, batch_rows, batch_index, self.derive_period_from_filename)

        def on_failure(attempt: int, exc: Exception) -> None:
            audit.fail(
                STAGE_ROW_NORMALIZE,
                f"source_file={payload.source_filename} batch={batch_index} attempt={attempt}: {exc}",
            )

        content = run_with_retries(
            lambda attempt: self.llm.complete(prompt, response_format=self.response_format),
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            on_attempt_failure=on_failure,
            should_retry=lambda exc: isinstance(exc, TransportError),
        )

        data = parse_json_object(content)
        raw_rows = data.get("rows")
        if not isinstance(raw_rows, list):
            raise ResponseFormatError("rows must be a list")
        if not raw_rows:
            raise ValidationError("rows are empty")

        period = parse_period_from_filename(payload.source_filename) if self.derive_period_from_filename else None
        normalized = [validate_row(raw, index, period) for index, raw in enumerate(raw_rows)]

        audit.success(
            STAGE_ROW_NORMALIZE,
            f"source_file={payload.source_filename} batch={batch_index} rows={len(normalized)}",
        )
        return normalized
