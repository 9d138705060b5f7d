from dataclasses import dataclass
import logging
import threading
import uuid

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from auction_ingest.audit import (
    FAIL,
    STAGE_ARCHIVE_PROCESS,
    STAGE_DATA_RETRIEVAL,
    STAGE_DATA_STORE,
    STAGE_LINK_EXTRACT,
    STAGE_ROW_NORMALIZE,
    SUCCESS,
    AuditLog,
)
from auction_ingest.config import Settings
from auction_ingest.downloader import ArchiveDownloader
from auction_ingest.errors import (
    ArchiveError,
    FetchError,
    LinkNotFoundError,
    ParseError,
    PipelineError,
    RefreshCancelledError,
    RefreshInProgressError,
    SourceStatusError,
)
from auction_ingest.fetcher import PageFetcher
from auction_ingest.html_links import extract_candidate_tables, resolve_archive_links
from auction_ingest.link_extractor import LinkExtractor
from auction_ingest.llm_client import ChatCompletionClient
from auction_ingest.row_normalizer import RowNormalizer
from auction_ingest.run_store import is_processed, list_sources, store_auction_rows
from auction_ingest.schemas import RefreshResult, SpreadsheetPayload
from auction_ingest.spreadsheet import SpreadsheetExtractor


logger = logging.getLogger(__name__)

# Shared by every runner in the process so a scheduled and a manual refresh
# never overlap.
_refresh_lock = threading.Lock()


@dataclass
class _RunState:
    first_error: Exception | None = None
    error_count: int = 0
    sources_failed: int = 0
    rows_stored: int = 0
    files_processed: int = 0
    files_skipped: int = 0

    def record(self, exc: Exception) -> None:
        self.error_count += 1
        if self.first_error is None:
            self.first_error = exc


class PipelineRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.Client(
            timeout=settings.http_timeout_seconds,
            headers={"User-Agent": settings.user_agent},
        )

        llm = ChatCompletionClient(
            self.http_client,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            timeout_seconds=settings.llm_timeout_seconds,
        )
        self.fetcher = PageFetcher(self.http_client)
        self.link_extractor = LinkExtractor(
            llm,
            max_attempts=settings.llm_max_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
        )
        self.downloader = ArchiveDownloader(self.http_client)
        self.spreadsheets = SpreadsheetExtractor()
        self.row_normalizer = RowNormalizer(
            llm,
            max_attempts=settings.llm_max_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            max_rows_per_batch=settings.max_rows_per_batch,
            max_token_estimate=settings.max_token_estimate,
            derive_period_from_filename=settings.derive_period_from_filename,
        )

    def close(self) -> None:
        if self._owns_client:
            self.http_client.close()

    def refresh(self, *, cancel_event: threading.Event | None = None) -> RefreshResult:
        """Run every configured source once and report the first error."""
        run_id = uuid.uuid4().hex
        if not _refresh_lock.acquire(blocking=False):
            logger.warning("refresh already running, skipped", extra={"run_id": run_id})
            return RefreshResult(
                run_id=run_id,
                status="skipped",
                sources_total=0,
                sources_failed=0,
                rows_stored=0,
                files_processed=0,
                files_skipped=0,
                error=RefreshInProgressError("a refresh is already running"),
            )
        try:
            return self._refresh(run_id, cancel_event)
        finally:
            _refresh_lock.release()

    def _refresh(self, run_id: str, cancel_event: threading.Event | None) -> RefreshResult:
        audit = AuditLog(self.session_factory, run_id)
        state = _RunState()
        audit.success(STAGE_DATA_RETRIEVAL, "pipeline refresh started")
        logger.info("pipeline refresh started", extra={"run_id": run_id})

        source_urls: list[str] = []
        try:
            with self.session_factory() as db:
                source_urls = [source.url for source in list_sources(db)]
        except SQLAlchemyError as exc:
            audit.fail(STAGE_DATA_RETRIEVAL, f"get sources: {exc}")
            logger.exception("loading sources failed", extra={"run_id": run_id})
            state.record(exc)

        for source_url in source_urls:
            if cancel_event is not None and cancel_event.is_set():
                audit.fail(STAGE_DATA_RETRIEVAL, "pipeline refresh cancelled")
                state.record(RefreshCancelledError("refresh cancelled before all sources were processed"))
                break

            errors_before = state.error_count
            try:
                self._process_source(source_url, audit, state, cancel_event)
            except RefreshCancelledError as exc:
                audit.fail(STAGE_DATA_RETRIEVAL, "pipeline refresh cancelled")
                state.record(exc)
                break
            except Exception as exc:
                logger.exception("unexpected source failure", extra={"run_id": run_id, "source_url": source_url})
                audit.fail(STAGE_DATA_RETRIEVAL, f"url={source_url} unexpected error: {exc}")
                state.record(exc)
            if state.error_count > errors_before:
                state.sources_failed += 1

        summary = (
            f"pipeline refresh finished sources={len(source_urls)} failed={state.sources_failed} "
            f"rows_stored={state.rows_stored} files_processed={state.files_processed} "
            f"files_skipped={state.files_skipped}"
        )
        audit.record(STAGE_DATA_RETRIEVAL, FAIL if state.first_error else SUCCESS, summary)
        if state.first_error is None and audit.error is not None:
            state.record(audit.error)

        status = "failed" if state.first_error is not None else "succeeded"
        log_extra = {"run_id": run_id, "status": status, "rows_stored": state.rows_stored}
        if status == "failed":
            logger.error("pipeline refresh failed: %s", state.first_error, extra=log_extra)
        else:
            logger.info("pipeline refresh completed", extra=log_extra)

        return RefreshResult(
            run_id=run_id,
            status=status,
            sources_total=len(source_urls),
            sources_failed=state.sources_failed,
            rows_stored=state.rows_stored,
            files_processed=state.files_processed,
            files_skipped=state.files_skipped,
            error=state.first_error,
        )

    def _process_source(
        self,
        source_url: str,
        audit: AuditLog,
        state: _RunState,
        cancel_event: threading.Event | None,
    ) -> None:
        log_extra = {"run_id": audit.run_id, "source_url": source_url}

        if not source_url:
            audit.fail(STAGE_DATA_RETRIEVAL, "source url is empty")
            state.record(FetchError("source url is empty"))
            return

        try:
            page = self.fetcher.fetch(source_url)
        except FetchError as exc:
            audit.fail(STAGE_DATA_RETRIEVAL, str(exc))
            logger.warning("source fetch failed", extra={**log_extra, "error": str(exc)})
            state.record(exc)
            return

        status_message = f"url={source_url} status={page.status_code}"
        if not page.ok:
            audit.fail(STAGE_DATA_RETRIEVAL, status_message)
            logger.warning("source returned bad status", extra={**log_extra, "status": page.status_code})
            state.record(SourceStatusError(f"request failed for {source_url} status={page.status_code}"))
            return
        audit.success(STAGE_DATA_RETRIEVAL, status_message)

        html = page.body
        candidate_tables: list[str] = []
        if html.strip():
            try:
                html = resolve_archive_links(source_url, html)
                candidate_tables = extract_candidate_tables(html)
            except ParseError as exc:
                audit.fail(STAGE_LINK_EXTRACT, f"prefilter html url={source_url}: {exc}")
                logger.warning("html prefilter failed", extra={**log_extra, "error": str(exc)})
                state.record(exc)
                return

        try:
            link = self.link_extractor.extract_link(html, candidate_tables, audit)
        except PipelineError as exc:
            logger.warning("link extraction failed", extra={**log_extra, "error": str(exc)})
            state.record(exc)
            return
        if link.error_code:
            logger.warning("no archive link found", extra={**log_extra, "error_code": link.error_code})
            state.record(LinkNotFoundError(source_url, link.error_code))
            return

        try:
            archive = self.downloader.download(link.link, source_url, audit)
        except PipelineError as exc:
            logger.warning("archive download failed", extra={**log_extra, "link": link.link, "error": str(exc)})
            state.record(exc)
            return

        try:
            contents = self.spreadsheets.extract(archive.raw_bytes)
        except ArchiveError as exc:
            audit.fail(STAGE_ARCHIVE_PROCESS, f"url={archive.resolved_url}: {exc}")
            logger.warning("archive extraction failed", extra={**log_extra, "error": str(exc)})
            state.record(exc)
            return

        audit.success(
            STAGE_ARCHIVE_PROCESS,
            f"url={archive.resolved_url} payloads={len(contents.payloads)} failures={len(contents.failures)}",
        )
        for entry_name, exc in contents.failures:
            audit.fail(STAGE_ARCHIVE_PROCESS, f"source_file={entry_name}: {exc}")
            state.record(exc)

        for payload in contents.payloads:
            if cancel_event is not None and cancel_event.is_set():
                raise RefreshCancelledError(f"refresh cancelled while processing {archive.resolved_url}")
            self._process_payload(payload, audit, state)

    def _process_payload(self, payload: SpreadsheetPayload, audit: AuditLog, state: _RunState) -> None:
        source_file = payload.source_filename
        log_extra = {"run_id": audit.run_id, "source_file": source_file}

        try:
            with self.session_factory() as db:
                already_processed = is_processed(db, source_file)
        except SQLAlchemyError as exc:
            audit.fail(STAGE_DATA_STORE, f"check processed source_file={source_file}: {exc}")
            logger.exception("processed-file lookup failed", extra=log_extra)
            state.record(exc)
            return

        if already_processed:
            audit.success(STAGE_ARCHIVE_PROCESS, f"source_file={source_file} already processed, skipped")
            logger.info("archive entry already processed", extra=log_extra)
            state.files_skipped += 1
            return

        try:
            result = self.row_normalizer.normalize(payload, audit)
        except PipelineError as exc:
            audit.fail(STAGE_ROW_NORMALIZE, f"source_file={source_file}: {exc}")
            logger.warning("row normalization failed", extra={**log_extra, "error": str(exc)})
            state.record(exc)
            return

        try:
            with self.session_factory() as db:
                stored = store_auction_rows(
                    db,
                    source_file=source_file,
                    participants=payload.participant_count,
                    rows=result.rows,
                    mark_processed=True,
                )
        except (SQLAlchemyError, ValueError) as exc:
            audit.fail(STAGE_DATA_STORE, f"store rows={len(result.rows)} source_file={source_file}: {exc}")
            logger.exception("storing rows failed", extra=log_extra)
            state.record(exc)
            return

        if stored == 0:
            audit.success(STAGE_DATA_STORE, f"source_file={source_file} stored by another run, skipped")
            state.files_skipped += 1
            return

        audit.success(STAGE_DATA_STORE, f"stored rows={stored} source_file={source_file}")
        logger.info("archive entry stored", extra={**log_extra, "rows": stored})
        state.rows_stored += stored
        state.files_processed += 1

        if result.error is not None:
            logger.warning("archive entry stored partially", extra={**log_extra, "error": str(result.error)})
            state.record(result.error)
