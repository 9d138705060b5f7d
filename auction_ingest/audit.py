import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from auction_ingest.run_store import append_run_event


logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
FAIL = "FAIL"

STAGE_DATA_RETRIEVAL = "DATA_RETRIEVAL"
STAGE_LINK_EXTRACT = "LLM_LINK_EXTRACT"
STAGE_ARCHIVE_DOWNLOAD = "ARCHIVE_DOWNLOAD"
STAGE_ARCHIVE_PROCESS = "ARCHIVE_PROCESS"
STAGE_ROW_NORMALIZE = "LLM_ROW_NORMALIZE"
STAGE_DATA_STORE = "DATA_STORE"


class AuditLog:
    """Run-scoped writer for run events.

    Appends never raise into the pipeline. The first failed append is kept
    on ``error`` so the runner can surface it when nothing else went wrong.
    """

    def __init__(self, session_factory: sessionmaker[Session], run_id: str) -> None:
        self.session_factory = session_factory
        self.run_id = run_id
        self.error: Exception | None = None

    def record(self, stage: str, outcome: str, message: str | None = None) -> None:
        try:
            with self.session_factory() as db:
                append_run_event(db, run_id=self.run_id, stage=stage, outcome=outcome, message=message)
        except (SQLAlchemyError, ValueError) as exc:
            logger.warning(
                "run event append failed",
                extra={"run_id": self.run_id, "stage": stage, "outcome": outcome, "error": str(exc)},
            )
            if self.error is None:
                self.error = exc

    def success(self, stage: str, message: str | None = None) -> None:
        self.record(stage, SUCCESS, message)

    def fail(self, stage: str, message: str | None = None) -> None:
        self.record(stage, FAIL, message)
