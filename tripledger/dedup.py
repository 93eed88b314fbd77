import hashlib

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tripledger.db_models import ImportAuditEntry, ImportBatch, ImportedTripRecord
from tripledger.errors import DuplicateRowError
from tripledger.schemas import PartitionKey


def fingerprint_content(raw: bytes | str) -> str:
    data = raw.encode("utf-8") if isinstance(raw, str) else raw
    if data.startswith(b"\xef\xbb\xbf"):
        data = data[3:]
    normalized = data.replace(b"\r\n", b"\n").replace(b"\r", b"\n").rstrip()
    return hashlib.sha256(normalized).hexdigest()


def find_completed_batch(db: Session, fingerprint: str, partition: PartitionKey) -> ImportBatch | None:
    stmt = (
        select(ImportBatch)
        .where(
            ImportBatch.file_fingerprint == fingerprint,
            ImportBatch.opco_code == partition.opco_code,
            ImportBatch.broker_code == partition.broker_code,
            ImportBatch.broker_account_code == partition.broker_account_code,
            ImportBatch.status == "completed",
        )
        .order_by(ImportBatch.id)
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def _dedup_key_taken(db: Session, key: tuple[str, str, str, str, str]) -> bool:
    opco_code, broker_code, broker_account_code, vendor, dedup_key = key
    stmt = select(ImportedTripRecord.id).where(
        ImportedTripRecord.opco_code == opco_code,
        ImportedTripRecord.broker_code == broker_code,
        ImportedTripRecord.broker_account_code == broker_account_code,
        ImportedTripRecord.vendor == vendor,
        ImportedTripRecord.dedup_key == dedup_key,
    )
    return db.execute(stmt).first() is not None


def insert_trip_once(db: Session, record: ImportedTripRecord, entry: ImportAuditEntry) -> None:
    # The unique constraint is the duplicate check; two concurrent commits cannot both win.
    key = (record.opco_code, record.broker_code, record.broker_account_code, record.vendor, record.dedup_key)
    external_trip_id = record.external_trip_id
    try:
        db.add(record)
        db.flush()
        entry.trip_record_id = record.id
        db.add(entry)
        db.commit()
    except IntegrityError:
        db.rollback()
        if key[-1] is not None and _dedup_key_taken(db, key):
            raise DuplicateRowError(key[3], external_trip_id) from None
        raise
