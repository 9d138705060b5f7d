from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auction_ingest.db_models import AuctionResult, ProcessedFile, RunEvent, Source, utc_now
from auction_ingest.schemas import CanonicalRow


def list_sources(db: Session) -> list[Source]:
    stmt = select(Source).order_by(Source.id)
    return list(db.execute(stmt).scalars().all())


def add_source(db: Session, *, url: str, comment: str | None = None) -> tuple[Source, bool]:
    url = url.strip()
    if not url:
        raise ValueError("source url is empty")

    existing = db.execute(select(Source).where(Source.url == url)).scalars().first()
    if existing is not None:
        return existing, False

    source = Source(url=url, comment=comment)
    db.add(source)
    db.commit()
    db.refresh(source)
    return source, True


def append_run_event(
    db: Session,
    *,
    run_id: str | None,
    stage: str,
    outcome: str,
    message: str | None = None,
) -> RunEvent:
    if not stage:
        raise ValueError("stage is empty")
    if not outcome:
        raise ValueError("outcome is empty")

    event = RunEvent(run_id=run_id, created_at=utc_now(), stage=stage, outcome=outcome, message=message)
    db.add(event)
    db.commit()
    return event


def recent_run_events(db: Session, *, limit: int, run_id: str | None = None) -> list[RunEvent]:
    if limit <= 0:
        raise ValueError("limit must be positive")

    stmt = select(RunEvent)
    if run_id is not None:
        stmt = stmt.where(RunEvent.run_id == run_id)
    stmt = stmt.order_by(RunEvent.created_at.desc(), RunEvent.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def is_processed(db: Session, filename: str) -> bool:
    if not filename:
        raise ValueError("filename is empty")

    stmt = select(ProcessedFile.id).where(ProcessedFile.filename == filename).limit(1)
    return db.execute(stmt).scalar_one_or_none() is not None


def mark_processed(db: Session, filename: str) -> ProcessedFile:
    if not filename:
        raise ValueError("filename is empty")

    stmt = select(ProcessedFile).where(ProcessedFile.filename == filename)
    existing = db.execute(stmt).scalar_one_or_none()
    if existing is not None:
        return existing

    record = ProcessedFile(filename=filename, processed_at=utc_now())
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # Unique filename keeps the first writer's record.
        db.rollback()
        existing = db.execute(stmt).scalar_one_or_none()
        if existing:
            return existing
        raise

    db.refresh(record)
    return record


def store_auction_rows(
    db: Session,
    *,
    source_file: str,
    participants: int,
    rows: Sequence[CanonicalRow],
    mark_processed: bool = False,
) -> int:
    """Insert result rows; with ``mark_processed`` the file is recorded in the same commit.

    Returns 0 when another writer already recorded the file.
    """
    if not source_file:
        raise ValueError("source file is empty")
    if participants <= 0:
        raise ValueError("participants must be positive")
    if not rows:
        raise ValueError("rows are empty")

    records = [
        AuctionResult(
            source_file=source_file,
            participants=participants,
            year=row.year,
            month=row.month,
            region=row.region,
            technology=row.technology,
            total_volume_auctioned=row.total_volume_auctioned,
            total_volume_sold=row.total_volume_sold,
            weighted_avg_price=row.weighted_avg_price,
            owner_volume=row.owner_volume,
            owner_weighted_avg_price=row.owner_weighted_avg_price,
            winner_count=row.winner_count,
        )
        for row in rows
    ]
    db.add_all(records)
    if mark_processed:
        db.add(ProcessedFile(filename=source_file, processed_at=utc_now()))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # Only a concurrent writer of the same file counts as a skip.
        if mark_processed and is_processed(db, source_file):
            return 0
        raise
    return len(records)
