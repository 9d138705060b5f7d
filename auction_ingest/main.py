import argparse
import logging

from auction_ingest.config import ConfigError, get_settings, load_source_config
from auction_ingest.database import build_session_factory
from auction_ingest.pipeline import PipelineRunner
from auction_ingest.run_store import add_source, list_sources, recent_run_events
from auction_ingest.scheduler import start_scheduler


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest published auction results")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("refresh", help="run the ingestion pipeline once for every source")

    schedule_parser = subparsers.add_parser("schedule", help="start the periodic refresh scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also refresh once immediately")

    add_parser = subparsers.add_parser("add-source", help="register a source page")
    add_parser.add_argument("--url", required=True, help="page that links to the results archive")
    add_parser.add_argument("--comment", default=None, help="free-form note about the source")

    seed_parser = subparsers.add_parser("seed-source", help="register the source from a JSON config file")
    seed_parser.add_argument("--config", required=True, help='path to {"source": {"url": ..., "comment": ...}}')

    subparsers.add_parser("list-sources", help="print registered sources")

    events_parser = subparsers.add_parser("events", help="print the most recent run events")
    events_parser.add_argument("--limit", type=int, default=20, help="number of events to show")
    events_parser.add_argument("--run-id", default=None, help="only show events of this run")

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    session_factory = build_session_factory(settings.database_url)

    if args.command == "add-source":
        try:
            with session_factory() as db:
                source, created = add_source(db, url=args.url, comment=args.comment)
        except ValueError as exc:
            print(f"error={exc}")
            raise SystemExit(2)
        print(f"source_id={source.id} url={source.url} created={created}")
        return

    if args.command == "seed-source":
        try:
            entry = load_source_config(args.config)
        except ConfigError as exc:
            print(f"error={exc}")
            raise SystemExit(2)
        with session_factory() as db:
            source, created = add_source(db, url=entry.url, comment=entry.comment)
        print(f"source_id={source.id} url={source.url} created={created}")
        return

    if args.command == "list-sources":
        with session_factory() as db:
            for source in list_sources(db):
                print(f"source_id={source.id} url={source.url} comment={source.comment or ''}")
        return

    if args.command == "events":
        with session_factory() as db:
            for event in recent_run_events(db, limit=args.limit, run_id=args.run_id):
                print(
                    f"{event.created_at.isoformat()} run_id={event.run_id or '-'} stage={event.stage} "
                    f"outcome={event.outcome} message={event.message or ''}"
                )
        return

    if not settings.openai_api_key:
        print("error=OPENAI_API_KEY is not set")
        raise SystemExit(2)

    if args.command == "schedule":
        start_scheduler(settings, session_factory, run_now=args.run_now)
        return

    runner = PipelineRunner(settings, session_factory)
    try:
        result = runner.refresh()
    finally:
        runner.close()

    print(
        "run_id={run_id} status={status} sources={sources} failed={failed} rows_stored={rows} "
        "files_processed={processed} files_skipped={skipped} error={error}".format(
            run_id=result.run_id,
            status=result.status,
            sources=result.sources_total,
            failed=result.sources_failed,
            rows=result.rows_stored,
            processed=result.files_processed,
            skipped=result.files_skipped,
            error=result.error or "",
        )
    )
    if result.status != "succeeded":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
