import argparse
from datetime import date
import json
import logging
from pathlib import Path

from tripledger.auditor import verify_batch, verify_completed_batches
from tripledger.batch_store import driver_summary_for_date, list_batches, trips_for_driver_and_date
from tripledger.config import get_settings
from tripledger.database import build_session_factory
from tripledger.errors import IngestError
from tripledger.importer import TripImporter
from tripledger.partitions import load_reference_data
from tripledger.scheduler import start_scheduler


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest broker trip files into the trip ledger")
    subparsers = parser.add_subparsers(dest="command", required=True)

    preview_parser = subparsers.add_parser("preview", help="dry-run a file without writing anything")
    commit_parser = subparsers.add_parser("commit", help="import a file and record its completeness proof")
    for sub in (preview_parser, commit_parser):
        sub.add_argument("file", help="manifest CSV or extracted manifest text")
        sub.add_argument("--opco", required=True, help="operating company code")
        sub.add_argument("--account", required=True, help="broker account code")
    commit_parser.add_argument("--force", action="store_true", help="re-commit a file already imported")

    audit_parser = subparsers.add_parser("audit", help="re-verify completeness proofs")
    audit_parser.add_argument("--batch-id", type=int, required=False, help="verify a single batch")

    batches_parser = subparsers.add_parser("batches", help="list import batches")
    batches_parser.add_argument("--opco", required=False)
    batches_parser.add_argument("--account", required=False)

    drivers_parser = subparsers.add_parser("drivers", help="summarize actual trips per driver for a service date")
    drivers_parser.add_argument("--date", type=date.fromisoformat, required=True, help="service date, YYYY-MM-DD")
    drivers_parser.add_argument("--driver", required=False, help="list one driver's trips instead")
    drivers_parser.add_argument("--opco", required=False)
    drivers_parser.add_argument("--account", required=False)

    seed_parser = subparsers.add_parser("seed-reference", help="load opcos, brokers and accounts from JSON")
    seed_parser.add_argument("file")

    schedule_parser = subparsers.add_parser("schedule", help="start the daily completeness audit")
    schedule_parser.add_argument("--run-now", action="store_true", help="also audit once immediately")

    return parser.parse_args()


def _print_proof(proof) -> None:
    print(
        "batch_id={batch_id} expected={expected} accounted={accounted} missing={missing} repeated={repeated} complete={complete}".format(
            batch_id=proof.batch_id,
            expected=proof.expected_rows,
            accounted=proof.accounted_rows,
            missing=",".join(map(str, proof.missing_rows)) or "-",
            repeated=",".join(map(str, proof.repeated_rows)) or "-",
            complete=proof.is_complete,
        )
    )


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    session_factory = build_session_factory(settings.database_url)
    if args.command == "schedule":
        start_scheduler(settings, session_factory, run_now=args.run_now)
        return

    if args.command == "seed-reference":
        payload = json.loads(Path(args.file).read_text(encoding="utf-8"))
        with session_factory() as db:
            counts = load_reference_data(db, payload)
        print(" ".join(f"{name}={count}" for name, count in counts.items()))
        return

    if args.command == "batches":
        with session_factory() as db:
            for batch in list_batches(db, opco_code=args.opco, broker_account_code=args.account):
                print(
                    f"batch_id={batch.id} status={batch.status} format={batch.format} "
                    f"partition={batch.opco_code}/{batch.broker_code}/{batch.broker_account_code} "
                    f"total={batch.total_rows} accounted={batch.accounted_rows} complete={batch.is_complete} "
                    f"file={batch.file_name}"
                )
        return

    if args.command == "drivers":
        with session_factory() as db:
            if args.driver:
                for trip in trips_for_driver_and_date(
                    db, args.driver, args.date, opco_code=args.opco, broker_account_code=args.account
                ):
                    print(
                        f"trip_id={trip.external_trip_id} status={trip.trip_status} pickup={trip.pickup_time} "
                        f"actual_pickup={trip.actual_pickup_time} on_time={trip.was_on_time} miles={trip.miles}"
                    )
                return
            for summary in driver_summary_for_date(
                db, args.date, opco_code=args.opco, broker_account_code=args.account
            ):
                print(
                    f"driver={summary.driver_name!r} completed={summary.completed_trips} "
                    f"cancelled={summary.cancelled_trips} no_show={summary.no_show_trips} "
                    f"miles={summary.total_miles} on_time={summary.on_time_count} late={summary.late_count} "
                    f"on_time_percent={summary.on_time_percent}"
                )
        return

    if args.command == "audit":
        with session_factory() as db:
            try:
                proofs = [verify_batch(db, args.batch_id)] if args.batch_id is not None else verify_completed_batches(db)
            except LookupError as exc:
                print(f"status=rejected error={exc}")
                raise SystemExit(2) from exc
        for proof in proofs:
            _print_proof(proof)
        if not all(proof.is_complete for proof in proofs):
            raise SystemExit(1)
        return

    path = Path(args.file)
    content = path.read_bytes()
    importer = TripImporter(settings, session_factory)
    try:
        if args.command == "preview":
            preview = importer.preview(content, path.name, opco_code=args.opco, broker_account_code=args.account)
            print(
                "format={format} total={total} valid={valid} cancelled={cancelled} skipped={skipped} errors={errors} duplicates={duplicates} duplicate_file={duplicate} ignored_columns={ignored}".format(
                    format=preview.format,
                    total=preview.total_rows,
                    valid=preview.valid_rows,
                    cancelled=preview.cancelled_rows,
                    skipped=preview.skipped_rows,
                    errors=preview.error_rows,
                    duplicates=preview.duplicate_rows,
                    duplicate=preview.is_duplicate,
                    ignored=len(preview.ignored_columns),
                )
            )
            return

        result = importer.commit(
            content,
            path.name,
            opco_code=args.opco,
            broker_account_code=args.account,
            force=args.force,
        )
    except IngestError as exc:
        print(f"status=rejected error_type={type(exc).__name__} error={exc}")
        raise SystemExit(2) from exc

    print(
        "import_id={import_id} format={format} total={total} imported={imported} duplicate={duplicate} cancelled={cancelled} skipped={skipped} errors={errors} accounted={accounted} complete={complete}".format(
            import_id=result.import_id,
            format=result.format,
            total=result.total_rows,
            imported=result.imported_rows,
            duplicate=result.duplicate_rows,
            cancelled=result.cancelled_rows,
            skipped=result.skipped_rows,
            errors=result.error_rows,
            accounted=result.accounted_rows,
            complete=result.is_complete,
        )
    )
    if not result.is_complete:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
