from datetime import UTC, date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from tripledger.errors import AppendOnlyViolation


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class Opco(Base):
    __tablename__ = "opcos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Broker(Base):
    __tablename__ = "brokers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class BrokerAccount(Base):
    __tablename__ = "broker_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    broker_id: Mapped[int] = mapped_column(ForeignKey("brokers.id"), index=True)
    # Null opco marks a global account shared by every opco.
    opco_id: Mapped[int | None] = mapped_column(ForeignKey("opcos.id"), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    broker: Mapped[Broker] = relationship()
    opco: Mapped[Opco | None] = relationship()


class ImportBatch(Base):
    __tablename__ = "import_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    format: Mapped[str | None] = mapped_column(String(32), nullable=True)
    vendor: Mapped[str | None] = mapped_column(String(32), nullable=True)
    opco_code: Mapped[str] = mapped_column(String(20), index=True)
    broker_code: Mapped[str] = mapped_column(String(20))
    broker_account_code: Mapped[str] = mapped_column(String(50), index=True)
    file_fingerprint: Mapped[str] = mapped_column(String(64), index=True)
    file_name: Mapped[str] = mapped_column(String(255))
    file_size: Mapped[int] = mapped_column(Integer, default=0)
    allowlist_version: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(32), default="pending", active_history=True)
    forced: Mapped[bool] = mapped_column(Boolean, default=False)
    total_rows: Mapped[int] = mapped_column(Integer, default=0)
    imported_rows: Mapped[int] = mapped_column(Integer, default=0)
    duplicate_rows: Mapped[int] = mapped_column(Integer, default=0)
    cancelled_rows: Mapped[int] = mapped_column(Integer, default=0)
    skipped_rows: Mapped[int] = mapped_column(Integer, default=0)
    error_rows: Mapped[int] = mapped_column(Integer, default=0)
    accounted_rows: Mapped[int] = mapped_column(Integer, default=0)
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    ignored_columns: Mapped[str] = mapped_column(Text, default="[]")
    service_date_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    service_date_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    audit_entries: Mapped[list["ImportAuditEntry"]] = relationship(back_populates="batch")
    trips: Mapped[list["ImportedTripRecord"]] = relationship(back_populates="batch")


class ImportedTripRecord(Base):
    __tablename__ = "imported_trip_records"
    __table_args__ = (
        UniqueConstraint(
            "opco_code",
            "broker_code",
            "broker_account_code",
            "vendor",
            "dedup_key",
            name="uq_trip_partition_vendor_key",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("import_batches.id"), index=True)
    vendor: Mapped[str] = mapped_column(String(32))
    opco_code: Mapped[str] = mapped_column(String(20), index=True)
    broker_code: Mapped[str] = mapped_column(String(20))
    broker_account_code: Mapped[str] = mapped_column(String(50), index=True)
    # External trip id for actual-trip imports; null for manifests so they never collide.
    dedup_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    external_trip_id: Mapped[str] = mapped_column(String(128), index=True)
    service_date: Mapped[date] = mapped_column(Date, index=True)
    appointment_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    pickup_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    pickup_window_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    pickup_window_end: Mapped[str | None] = mapped_column(String(5), nullable=True)
    actual_pickup_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    actual_dropoff_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    mobility_type: Mapped[str] = mapped_column(String(8))
    funding_source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    pickup_city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    dropoff_city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    driver_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    vehicle_unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    pickup_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    pickup_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    dropoff_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    dropoff_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    miles: Mapped[float | None] = mapped_column(Float, nullable=True)
    trip_status: Mapped[str] = mapped_column(String(16))
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    is_no_show: Mapped[bool] = mapped_column(Boolean, default=False)
    trip_type: Mapped[str | None] = mapped_column(String(1), nullable=True)
    is_standing: Mapped[bool] = mapped_column(Boolean, default=False)
    is_will_call: Mapped[bool] = mapped_column(Boolean, default=False)
    was_on_time: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    batch: Mapped[ImportBatch] = relationship(back_populates="trips")


class ImportAuditEntry(Base):
    __tablename__ = "import_audit_entries"
    __table_args__ = (UniqueConstraint("batch_id", "row_number", name="uq_audit_batch_row"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("import_batches.id"), index=True)
    row_number: Mapped[int] = mapped_column(Integer)
    outcome: Mapped[str] = mapped_column(String(16), index=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_ref: Mapped[str] = mapped_column(String(16))
    trip_record_id: Mapped[int | None] = mapped_column(ForeignKey("imported_trip_records.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    batch: Mapped[ImportBatch] = relationship(back_populates="audit_entries")


@event.listens_for(ImportAuditEntry, "before_update")
def _reject_audit_update(mapper, connection, target: ImportAuditEntry) -> None:
    raise AppendOnlyViolation(f"audit entry {target.id} is append-only")


@event.listens_for(ImportAuditEntry, "before_delete")
def _reject_audit_delete(mapper, connection, target: ImportAuditEntry) -> None:
    raise AppendOnlyViolation(f"audit entry {target.id} is append-only")


@event.listens_for(ImportBatch, "before_update")
def _reject_completed_batch_update(mapper, connection, target: ImportBatch) -> None:
    history = inspect(target).attrs.status.history
    previous = list(history.deleted or ()) + list(history.unchanged or ())
    if "completed" in previous:
        raise AppendOnlyViolation(f"import batch {target.id} is completed and immutable")


@event.listens_for(ImportBatch, "before_delete")
def _reject_batch_delete(mapper, connection, target: ImportBatch) -> None:
    raise AppendOnlyViolation(f"import batch {target.id} is a compliance record and cannot be deleted")
