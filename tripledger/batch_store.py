from datetime import date
import json

from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.db_models import ImportBatch, ImportedTripRecord, utc_now
from tripledger.schemas import CompletenessProof, DateRange, DriverSummary, NormalizedTrip, PartitionKey


def create_batch(
    db: Session,
    *,
    partition: PartitionKey,
    fingerprint: str,
    file_name: str,
    file_size: int,
    allowlist_version: str,
    forced: bool = False,
) -> ImportBatch:
    batch = ImportBatch(
        opco_code=partition.opco_code,
        broker_code=partition.broker_code,
        broker_account_code=partition.broker_account_code,
        file_fingerprint=fingerprint,
        file_name=file_name,
        file_size=file_size,
        allowlist_version=allowlist_version,
        forced=forced,
        status="pending",
    )
    db.add(batch)
    db.commit()
    db.refresh(batch)
    return batch


def mark_batch_processing(
    db: Session,
    batch: ImportBatch,
    *,
    format_id: str,
    vendor: str,
    total_rows: int,
    ignored_columns: list[str],
    service_dates: DateRange | None,
) -> None:
    batch.status = "processing"
    batch.format = format_id
    batch.vendor = vendor
    batch.total_rows = total_rows
    batch.ignored_columns = json.dumps(ignored_columns)
    if service_dates is not None:
        batch.service_date_from = service_dates.start
        batch.service_date_to = service_dates.end
    db.commit()


def mark_batch_completed(db: Session, batch: ImportBatch, proof: CompletenessProof) -> None:
    batch.status = "completed"
    batch.imported_rows = proof.imported_rows
    batch.duplicate_rows = proof.duplicate_rows
    batch.cancelled_rows = proof.cancelled_rows
    batch.skipped_rows = proof.skipped_rows
    batch.error_rows = proof.error_rows
    batch.accounted_rows = proof.accounted_rows
    batch.is_complete = proof.is_complete
    batch.completed_at = utc_now()
    batch.error = None
    db.commit()


def mark_batch_failed(db: Session, batch: ImportBatch, *, error: str, format_id: str | None = None) -> None:
    batch.status = "failed"
    batch.format = format_id
    batch.error = error
    batch.completed_at = utc_now()
    db.commit()


def build_trip_record(
    batch: ImportBatch,
    *,
    vendor: str,
    partition: PartitionKey,
    trip: NormalizedTrip,
    dedup: bool,
) -> ImportedTripRecord:
    return ImportedTripRecord(
        batch_id=batch.id,
        vendor=vendor,
        opco_code=partition.opco_code,
        broker_code=partition.broker_code,
        broker_account_code=partition.broker_account_code,
        dedup_key=trip.external_trip_id if dedup else None,
        external_trip_id=trip.external_trip_id,
        service_date=trip.service_date,
        appointment_time=trip.appointment_time,
        pickup_time=trip.pickup_time,
        pickup_window_start=trip.pickup_window_start,
        pickup_window_end=trip.pickup_window_end,
        actual_pickup_time=trip.actual_pickup_time,
        actual_dropoff_time=trip.actual_dropoff_time,
        mobility_type=trip.mobility_type,
        funding_source=trip.funding_source,
        pickup_city=trip.pickup_city,
        dropoff_city=trip.dropoff_city,
        driver_name=trip.driver_name,
        vehicle_unit=trip.vehicle_unit,
        pickup_lat=trip.pickup_lat,
        pickup_lon=trip.pickup_lon,
        dropoff_lat=trip.dropoff_lat,
        dropoff_lon=trip.dropoff_lon,
        miles=trip.miles,
        trip_status=trip.trip_status,
        is_cancelled=trip.is_cancelled,
        is_no_show=trip.is_no_show,
        trip_type=trip.trip_type,
        is_standing=trip.is_standing,
        is_will_call=trip.is_will_call,
        was_on_time=trip.was_on_time,
    )


def get_batch(db: Session, batch_id: int) -> ImportBatch | None:
    return db.get(ImportBatch, batch_id)


def list_batches(
    db: Session,
    *,
    opco_code: str | None = None,
    broker_account_code: str | None = None,
    status: str | None = None,
) -> list[ImportBatch]:
    stmt = select(ImportBatch)
    if opco_code:
        stmt = stmt.where(ImportBatch.opco_code == opco_code)
    if broker_account_code:
        stmt = stmt.where(ImportBatch.broker_account_code == broker_account_code)
    if status:
        stmt = stmt.where(ImportBatch.status == status)
    return list(db.execute(stmt.order_by(ImportBatch.id.desc())).scalars().all())


def trips_for_date(
    db: Session,
    service_date: date,
    *,
    opco_code: str | None = None,
    broker_account_code: str | None = None,
) -> list[ImportedTripRecord]:
    stmt = select(ImportedTripRecord).where(ImportedTripRecord.service_date == service_date)
    if opco_code:
        stmt = stmt.where(ImportedTripRecord.opco_code == opco_code)
    if broker_account_code:
        stmt = stmt.where(ImportedTripRecord.broker_account_code == broker_account_code)
    return list(db.execute(stmt.order_by(ImportedTripRecord.id)).scalars().all())


def normalize_driver_name(name: str) -> str:
    return " ".join(name.lower().split())


def trips_for_driver_and_date(
    db: Session,
    driver_name: str,
    service_date: date,
    *,
    opco_code: str | None = None,
    broker_account_code: str | None = None,
) -> list[ImportedTripRecord]:
    wanted = normalize_driver_name(driver_name)
    return [
        trip
        for trip in trips_for_date(db, service_date, opco_code=opco_code, broker_account_code=broker_account_code)
        if trip.driver_name and normalize_driver_name(trip.driver_name) == wanted
    ]


def driver_summary_for_date(
    db: Session,
    service_date: date,
    *,
    opco_code: str | None = None,
    broker_account_code: str | None = None,
) -> list[DriverSummary]:
    grouped: dict[str, list[ImportedTripRecord]] = {}
    for trip in trips_for_date(db, service_date, opco_code=opco_code, broker_account_code=broker_account_code):
        if trip.driver_name:
            grouped.setdefault(normalize_driver_name(trip.driver_name), []).append(trip)

    summaries: list[DriverSummary] = []
    for trips in grouped.values():
        completed = [trip for trip in trips if trip.trip_status == "completed"]
        on_time = sum(1 for trip in completed if trip.was_on_time is True)
        late = sum(1 for trip in completed if trip.was_on_time is False)
        rated = on_time + late
        summaries.append(
            DriverSummary(
                driver_name=trips[0].driver_name,
                completed_trips=len(completed),
                cancelled_trips=sum(1 for trip in trips if trip.trip_status == "cancelled"),
                no_show_trips=sum(1 for trip in trips if trip.trip_status == "no_show"),
                total_miles=round(sum(trip.miles or 0.0 for trip in completed), 2),
                on_time_count=on_time,
                late_count=late,
                # Drivers with no rated pickups count as fully on time.
                on_time_percent=int(on_time * 100 / rated + 0.5) if rated else 100,
            )
        )
    return sorted(summaries, key=lambda summary: normalize_driver_name(summary.driver_name))
