import json

import httpx
import pytest

from auction_ingest.errors import InvalidPayloadError, LLMTransportError, PayloadTooLargeError, ValidationError
from auction_ingest.llm_client import ChatCompletionClient
from auction_ingest.row_normalizer import (
    RowNormalizer,
    estimate_tokens,
    parse_period_from_filename,
    split_rows,
    validate_row,
)
from auction_ingest.schemas import SpreadsheetPayload


FILENAME = "20251119_August_2025_83_GLOBAL_Results_detailedresults.xlsx"
HEADER = ["Region", "Technology", "Volume auctioned", "Volume sold", "Price"]
MODEL_ROW = {
    "region": "Nordic",
    "technology": "Wind",
    "total_volume_auctioned": 1200.5,
    "total_volume_sold": 1100,
    "weighted_avg_price_eur_per_mwh": 0.45,
    "my_total_volume": None,
    "my_weighted_avg_price_eur_per_mwh": None,
    "number_of_winners": 4,
}


def _chat(payload: dict[str, object]) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": json.dumps(payload)}}]})


def _normalizer(handler, **overrides) -> RowNormalizer:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    llm = ChatCompletionClient(
        client,
        api_key="test-key",
        base_url="https://llm.test/v1",
        model="gpt-4o-mini",
        timeout_seconds=5,
    )
    options = {
        "max_attempts": 3,
        "backoff_seconds": 0,
        "max_rows_per_batch": 500,
        "max_token_estimate": 8000,
        "derive_period_from_filename": True,
    }
    options.update(overrides)
    return RowNormalizer(llm, **options)


def _payload(row_count: int, filename: str = FILENAME) -> SpreadsheetPayload:
    rows = [[f"Region {index}", "Wind", "1", "1", "1"] for index in range(row_count)]
    return SpreadsheetPayload(source_filename=filename, participant_count=83, header_row=HEADER, data_rows=rows)


def test_period_is_parsed_from_filename() -> None:
    assert parse_period_from_filename(FILENAME) == (2025, 8)
    assert parse_period_from_filename("results/March_2024.xlsx") == (2024, 3)


@pytest.mark.parametrize(
    "filename",
    ["results_2025.xlsx", "results_August.xlsx", "results_August_next.xlsx", "Results_August_0000.xlsx"],
)
def test_period_parse_errors(filename: str) -> None:
    with pytest.raises(ValidationError):
        parse_period_from_filename(filename)


def test_split_rows_and_estimate() -> None:
    rows = [["x"]] * 1001

    batches = split_rows(rows, 500)

    assert [len(batch) for batch in batches] == [500, 500, 1]
    assert estimate_tokens(500, 8) == 8000
    assert estimate_tokens(0, 8) == 0


def test_validate_row_accepts_integral_floats() -> None:
    row = validate_row({**MODEL_ROW, "year": 2025.0, "month": 8}, 0)

    assert row.year == 2025
    assert isinstance(row.year, int)
    assert row.owner_volume is None
    assert row.winner_count == 4


@pytest.mark.parametrize(
    "overrides",
    [
        {"year": 2025.5, "month": 8},
        {"year": 2025, "month": 7.5},
        {"year": 0, "month": 8},
        {"year": 2025, "month": 13},
        {"year": True, "month": 8},
        {"year": "2025", "month": 8},
        {"year": 2025, "month": 8, "region": " "},
        {"year": 2025, "month": 8, "technology": None},
        {"year": 2025, "month": 8, "total_volume_sold": "lots"},
    ],
)
def test_validate_row_rejects_bad_values(overrides: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        validate_row({**MODEL_ROW, **overrides}, 0)


def test_normalize_derives_period_from_filename(audit) -> None:
    requests: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        return _chat({"source_file": FILENAME, "participants": 83, "rows": [MODEL_ROW]})

    result = _normalizer(handler).normalize(_payload(2), audit)

    assert result.error is None
    assert [(row.year, row.month, row.region) for row in result.rows] == [(2025, 8, "Nordic")]
    assert requests[0]["response_format"]["json_schema"]["name"] == "auction_results"
    assert "Do not include year or month" in requests[0]["messages"][0]["content"]


def test_normalize_rejects_zero_year_from_filename(audit) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _chat({"source_file": "Results_August_0000.xlsx", "participants": 5, "rows": [MODEL_ROW]})

    with pytest.raises(ValidationError):
        _normalizer(handler).normalize(_payload(1, "Results_August_0000.xlsx"), audit)


def test_validate_row_rejects_zero_derived_year() -> None:
    with pytest.raises(ValidationError):
        validate_row(MODEL_ROW, 0, period=(0, 8))


def test_normalize_uses_inline_period_when_not_derived(audit) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _chat({"source_file": "x.xlsx", "participants": 83, "rows": [{**MODEL_ROW, "year": 2023, "month": 2}]})

    result = _normalizer(handler, derive_period_from_filename=False).normalize(_payload(1, "x.xlsx"), audit)

    assert (result.rows[0].year, result.rows[0].month) == (2023, 2)


def test_second_batch_failure_returns_partial_rows(audit) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            return _chat({"source_file": FILENAME, "participants": 83, "rows": [MODEL_ROW, MODEL_ROW]})
        return _chat({"source_file": FILENAME, "participants": 83, "rows": [{**MODEL_ROW, "region": ""}]})

    result = _normalizer(handler, max_rows_per_batch=2).normalize(_payload(3), audit)

    assert len(result.rows) == 2
    assert isinstance(result.error, ValidationError)
    assert calls == 2


def test_transport_failures_are_retried_per_batch(audit) -> None:
    replies = iter(
        [
            httpx.Response(500, text="oops"),
            _chat({"source_file": FILENAME, "participants": 83, "rows": [MODEL_ROW]}),
        ]
    )

    result = _normalizer(lambda request: next(replies)).normalize(_payload(1), audit)

    assert len(result.rows) == 1
    assert result.error is None


def test_all_batches_failing_raises_first_error(audit) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503, text="unavailable")

    with pytest.raises(LLMTransportError):
        _normalizer(handler, max_rows_per_batch=1).normalize(_payload(2), audit)

    assert calls == 6


def test_payload_over_budget_is_rejected_before_calling_model(audit) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("model must not be called")

    with pytest.raises(PayloadTooLargeError):
        _normalizer(handler, max_token_estimate=10).normalize(_payload(5), audit)


@pytest.mark.parametrize(
    "payload",
    [
        SpreadsheetPayload(source_filename="", participant_count=1, header_row=HEADER, data_rows=[["a"]]),
        SpreadsheetPayload(source_filename=FILENAME, participant_count=0, header_row=HEADER, data_rows=[["a"]]),
        SpreadsheetPayload(source_filename=FILENAME, participant_count=1, header_row=[], data_rows=[["a"]]),
        SpreadsheetPayload(source_filename=FILENAME, participant_count=1, header_row=HEADER, data_rows=[]),
    ],
)
def test_structurally_invalid_payload(payload: SpreadsheetPayload, audit) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("model must not be called")

    with pytest.raises(InvalidPayloadError):
        _normalizer(handler).normalize(payload, audit)
